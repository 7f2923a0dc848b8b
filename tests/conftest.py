from __future__ import annotations

import os
from typing import TYPE_CHECKING

import httpx
import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ctr_relay.ranges import parse_range

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path

KEY = b"examplekey123456examplekey123456"
IV = bytes(16)


def ctr_transform(key: bytes, iv: bytes, data: bytes) -> bytes:
    """Encrypt or decrypt ``data`` as one unbroken CTR stream from ``iv``."""
    context = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
    return context.update(data) + context.finalize()


def _set_env(env_vars: dict[str, str]) -> dict[str, str | None]:
    original_values = {}
    for key, value in env_vars.items():
        original_values[key] = os.environ.get(key)
        os.environ[key] = value
    return original_values


def _restore_env(original_values: dict[str, str | None]) -> None:
    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value


@pytest.fixture
def key() -> bytes:
    return KEY


@pytest.fixture
def iv() -> bytes:
    return IV


@pytest.fixture
def plaintext() -> bytes:
    """Return a few kilobytes of recognisable, non-repeating bytes."""
    lines = (f"line {i:05d} of the secure stream\n" for i in range(200))
    return "".join(lines).encode()


@pytest.fixture
def ciphertext(plaintext: bytes) -> bytes:
    return ctr_transform(KEY, IV, plaintext)


@pytest.fixture
def cipher_env() -> Generator[dict[str, str]]:
    """Set up key material environment variables."""
    env_vars = {
        "CTR_RELAY_KEY": KEY.hex(),
        "CTR_RELAY_IV": IV.hex(),
    }
    original_values = _set_env(env_vars)
    yield env_vars
    _restore_env(original_values)


@pytest.fixture
def local_env(cipher_env: dict[str, str], tmp_path: Path) -> Generator[dict[str, str]]:
    """Serve encrypted files from a temporary directory."""
    env_vars = {"CTR_RELAY_LOCAL_ROOT": str(tmp_path)}
    original_values = _set_env(env_vars)
    yield {**cipher_env, **env_vars}
    _restore_env(original_values)


@pytest.fixture
def upstream_env(cipher_env: dict[str, str]) -> Generator[dict[str, str]]:
    env_vars = {"CTR_RELAY_UPSTREAM_URL": "http://origin.test/blobs/"}
    original_values = _set_env(env_vars)
    yield {**cipher_env, **env_vars}
    _restore_env(original_values)


def make_origin(
    content: bytes,
    *,
    honor_ranges: bool = True,
    seen: list[httpx.Request] | None = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """Build an httpx.MockTransport handler serving ``content`` like an origin."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        range_header = request.headers.get("range")
        if not range_header or not honor_ranges:
            return httpx.Response(
                200,
                headers={"Content-Length": str(len(content))},
                stream=httpx.ByteStream(content),
            )
        spec = parse_range(range_header, len(content))
        return httpx.Response(
            206,
            headers={
                "Content-Length": str(spec.length),
                "Content-Range": spec.content_range(len(content)),
            },
            stream=httpx.ByteStream(content[spec.offset : spec.end + 1]),
        )

    return handler


@pytest.fixture
def origin_factory():
    return make_origin


@pytest.fixture
def transform() -> Callable[[bytes, bytes, bytes], bytes]:
    return ctr_transform
