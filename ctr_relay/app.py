from __future__ import annotations

from litestar import Litestar, Request, Response, get
from litestar.config.cors import CORSConfig
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .proxy import CTRRelayProxy

prometheus_config = PrometheusConfig(app_name="ctr_relay", prefix="ctr_relay")


def create_app(proxy: CTRRelayProxy | None = None) -> Litestar:
    """Create the CTR relay ASGI application.

    Serve with an ASGI server in factory mode, e.g.
    ``uvicorn ctr_relay.app:create_app --factory``.
    """
    relay_proxy = proxy if proxy is not None else CTRRelayProxy.from_env()

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @get("/files/{path:path}")
    async def files(request: Request, path: str) -> Response:
        return await relay_proxy.handle_local(request, path)

    @get("/remote/{path:path}")
    async def remote(request: Request, path: str) -> Response:
        return await relay_proxy.handle_remote(request, path)

    @get("/s3/{path:path}")
    async def s3(request: Request, path: str) -> Response:
        return await relay_proxy.handle_s3(request, path)

    async def startup(app: Litestar) -> None:
        await relay_proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await relay_proxy.shutdown()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["Range"],
        expose_headers=["Accept-Ranges", "Content-Length", "Content-Range"],
    )

    return Litestar(
        route_handlers=[health, files, remote, s3, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
    )
