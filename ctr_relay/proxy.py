from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import httpx
from boto3.session import Session
from botocore.config import Config as BotoConfig
from litestar.enums import MediaType
from litestar.response import Response
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .ctr import IV_SIZE, KEY_SIZES
from .exceptions import (
    InvalidIVLength,
    InvalidKeyMaterial,
    InvalidRangeFormat,
    RangeOutOfBounds,
    SourceStatusError,
    TransportError,
)
from .relay import DEFAULT_CONTENT_TYPE, open_relay
from .sources import FileSource, RemoteSource, S3Source

if TYPE_CHECKING:
    from litestar import Request

    from .sources import ByteSource

LOG = logging.getLogger("ctr_relay.proxy")


def _text_response(
    content: str, status_code: int, headers: dict[str, str] | None = None
) -> Response:
    return Response(
        content=content,
        status_code=status_code,
        headers=headers,
        media_type=MediaType.TEXT,
    )


def _decode_hex(value: str, name: str) -> bytes:
    try:
        return bytes.fromhex(value.strip())
    except ValueError as exc:
        msg = f"{name} must be hex encoded"
        raise ValueError(msg) from exc


class CipherSettings(BaseSettings):
    """Key material and response metadata for relayed resources."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    key: SecretStr = Field(validation_alias="CTR_RELAY_KEY")
    iv: str = Field(validation_alias="CTR_RELAY_IV")
    content_type: str = Field(
        default=DEFAULT_CONTENT_TYPE,
        validation_alias="CTR_RELAY_CONTENT_TYPE",
    )

    @field_validator("key")
    @classmethod
    def _check_key(cls, value: SecretStr) -> SecretStr:
        raw = _decode_hex(value.get_secret_value(), "CTR_RELAY_KEY")
        if len(raw) not in KEY_SIZES:
            msg = "CTR_RELAY_KEY must decode to 16, 24 or 32 bytes"
            raise ValueError(msg)
        return value

    @field_validator("iv")
    @classmethod
    def _check_iv(cls, value: str) -> str:
        if len(_decode_hex(value, "CTR_RELAY_IV")) != IV_SIZE:
            msg = "CTR_RELAY_IV must decode to 16 bytes"
            raise ValueError(msg)
        return value

    @property
    def key_bytes(self) -> bytes:
        return bytes.fromhex(self.key.get_secret_value().strip())

    @property
    def iv_bytes(self) -> bytes:
        return bytes.fromhex(self.iv.strip())


class UpstreamSettings(BaseSettings):
    """Configuration for the HTTP origin serving encrypted resources."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    base_url: str | None = Field(
        default=None,
        validation_alias="CTR_RELAY_UPSTREAM_URL",
    )
    timeout: float = Field(
        default=60.0,
        validation_alias="CTR_RELAY_UPSTREAM_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        validation_alias="CTR_RELAY_UPSTREAM_READ_TIMEOUT",
    )
    max_connections: int = Field(
        default=100,
        validation_alias="CTR_RELAY_UPSTREAM_MAX_CONNECTIONS",
    )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


class LocalSettings(BaseSettings):
    """Configuration for encrypted files served from local disk."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    root: Path | None = Field(
        default=None,
        validation_alias="CTR_RELAY_LOCAL_ROOT",
    )

    @property
    def enabled(self) -> bool:
        return self.root is not None


class S3Settings(BaseSettings):
    """Configuration for encrypted objects in S3-compatible storage."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="CTR_RELAY_S3_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CTR_RELAY_S3_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CTR_RELAY_S3_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CTR_RELAY_S3_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CTR_RELAY_S3_REGION",
            "AWS_REGION",
        ),
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="virtual",
        validation_alias="CTR_RELAY_S3_ADDRESSING_STYLE",
    )

    @property
    def enabled(self) -> bool:
        """Check if S3 storage is enabled based on configuration."""
        return bool(self.endpoint or self.access_key or self.secret_key or self.region)


def load_cipher_settings_from_env() -> CipherSettings:
    return CipherSettings()


def load_upstream_settings_from_env() -> UpstreamSettings:
    return UpstreamSettings()


def load_local_settings_from_env() -> LocalSettings:
    return LocalSettings()


def load_s3_settings_from_env() -> S3Settings:
    """Load S3 settings from environment variables.

    Returns:
        S3Settings instance populated from environment variables.
    """
    return S3Settings()


class CTRRelayProxy:
    def __init__(
        self,
        cipher: CipherSettings,
        upstream: UpstreamSettings,
        local: LocalSettings,
        s3: S3Settings,
        *,
        s3_client: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._cipher_settings = cipher
        self._upstream_settings = upstream
        self._local_settings = local
        self._s3_settings = s3
        self._http_client: httpx.AsyncClient | None = None
        self._transport = transport
        self._s3_client = s3_client
        if self._s3_client is None and s3.enabled:
            self._s3_client = self._build_s3_client()

    async def startup(self) -> None:
        if self._upstream_settings.enabled:
            self._http_client = httpx.AsyncClient(
                base_url=self._upstream_settings.base_url or "",
                timeout=httpx.Timeout(
                    self._upstream_settings.timeout,
                    read=self._upstream_settings.read_timeout,
                ),
                limits=httpx.Limits(
                    max_connections=self._upstream_settings.max_connections
                ),
                transport=self._transport,
                trust_env=False,
            )
        LOG.info(
            "CTR relay ready (upstream=%s, local=%s, s3=%s)",
            self._upstream_settings.base_url or "disabled",
            self._local_settings.root or "disabled",
            self._describe_s3(),
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def handle_local(self, request: Request, path: str) -> Response:
        LOG.debug("handle_local path=%s", path)
        target = self._resolve_local_path(path)
        if target is None:
            return _text_response("Not Found", 404)
        return await self._relay(request, FileSource(target))

    async def handle_remote(self, request: Request, path: str) -> Response:
        LOG.debug("handle_remote path=%s", path)
        if self._http_client is None:
            return _text_response("Not Found", 404)
        source = RemoteSource(self._http_client, path.lstrip("/"))
        return await self._relay(request, source)

    async def handle_s3(self, request: Request, path: str) -> Response:
        LOG.debug("handle_s3 path=%s", path)
        bucket, key = self._extract_bucket_and_key(path)
        if self._s3_client is None or not bucket or not key:
            return _text_response("Not Found", 404)
        source = S3Source(self._s3_client, bucket, key)
        return await self._relay(request, source)

    async def _relay(self, request: Request, source: ByteSource) -> Response:
        range_header = request.headers.get("range", "")
        try:
            relayed = await open_relay(
                source,
                self._cipher_settings.key_bytes,
                self._cipher_settings.iv_bytes,
                range_header,
                content_type=self._cipher_settings.content_type,
            )
        except InvalidRangeFormat as error:
            LOG.debug("rejecting range %r: %s", range_header, error)
            return _text_response(str(error), 400)
        except RangeOutOfBounds as error:
            LOG.debug("unsatisfiable range %r: %s", range_header, error)
            return _text_response(
                str(error),
                416,
                headers={"Content-Range": f"bytes */{error.resource_size}"},
            )
        except SourceStatusError as error:
            LOG.warning("source error: %s", error)
            status_code = error.status_code if error.status_code in {404, 416} else 502
            return _text_response(str(error), status_code)
        except TransportError as error:
            LOG.warning("transport error: %s", error)
            return _text_response("Bad Gateway", 502)
        except (InvalidKeyMaterial, InvalidIVLength):
            LOG.exception("relay misconfigured")
            return _text_response("Internal Server Error", 500)
        return relayed.to_response()

    def _resolve_local_path(self, path: str) -> Path | None:
        root = self._local_settings.root
        if root is None:
            return None
        base = root.resolve()
        target = (base / path.lstrip("/")).resolve()
        if target == base or not target.is_relative_to(base):
            LOG.debug("refusing path outside local root: %s", path)
            return None
        return target

    def _build_s3_client(self):
        session = Session(
            aws_access_key_id=self._s3_settings.access_key,
            aws_secret_access_key=self._s3_settings.secret_key,
            aws_session_token=self._s3_settings.session_token,
            region_name=self._s3_settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._s3_settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 1},
                s3={"addressing_style": self._s3_settings.addressing_style},
            ),
        )

    def _extract_bucket_and_key(self, path: str) -> tuple[str | None, str | None]:
        trimmed = path.lstrip("/")
        if not trimmed:
            return None, None
        if "/" not in trimmed:
            return trimmed, ""
        bucket, key = trimmed.split("/", 1)
        return bucket, key

    def _describe_s3(self) -> str:
        if not self._s3_client:
            return "disabled"
        endpoint = self._s3_settings.endpoint or "aws"
        region = self._s3_settings.region or "default"
        return f"{endpoint} ({region})"

    @classmethod
    def from_env(cls) -> CTRRelayProxy:
        """Create a CTRRelayProxy instance from environment variables.

        Returns:
            CTRRelayProxy configured from environment variables.
        """
        return cls(
            cipher=load_cipher_settings_from_env(),
            upstream=load_upstream_settings_from_env(),
            local=load_local_settings_from_env(),
            s3=load_s3_settings_from_env(),
        )
