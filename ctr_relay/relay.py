"""Range-aware relay of AES-CTR encrypted resources.

The relay opens a byte source for the client's Range header, positions the
CTR keystream at the offset the source actually delivers, and streams the
XOR-transformed bytes to a sink. Status and headers are computed here once
for every kind of source and are always handed to the sink before the
first body byte.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, BinaryIO, Protocol

from litestar.response import Stream

from .ctr import apply_keystream, keystream_at, validate_key_material
from .exceptions import TransportError
from .ranges import RangeSpec
from .sources import LocalSource, RemoteSource

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    import httpx
    from cryptography.hazmat.primitives.ciphers import CipherContext

    from .sources import ByteSource, SourceRead

LOG = logging.getLogger("ctr_relay.relay")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ResponseSink(Protocol):
    """Destination of a relayed response."""

    async def start(self, status_code: int, headers: Mapping[str, str]) -> None: ...

    async def write(self, chunk: bytes) -> None: ...


class BufferedSink:
    """In-memory sink recording status, headers and body."""

    def __init__(self) -> None:
        self.status_code: int | None = None
        self.headers: dict[str, str] = {}
        self.body = bytearray()

    @property
    def started(self) -> bool:
        return self.status_code is not None

    async def start(self, status_code: int, headers: Mapping[str, str]) -> None:
        if self.started:
            msg = "response already started"
            raise RuntimeError(msg)
        self.status_code = status_code
        self.headers = dict(headers)

    async def write(self, chunk: bytes) -> None:
        if not self.started:
            msg = "write before response start"
            raise RuntimeError(msg)
        self.body.extend(chunk)

    def getvalue(self) -> bytes:
        return bytes(self.body)


class RelayResponse:
    """Status, headers and decrypting body of one relayed request."""

    def __init__(
        self,
        read: SourceRead,
        keystream: CipherContext,
        status_code: int,
        headers: dict[str, str],
    ) -> None:
        self._read = read
        self._keystream = keystream
        self.status_code = status_code
        self.headers = headers

    @property
    def offset(self) -> int:
        return self._read.offset

    @property
    def length(self) -> int | None:
        return self._read.length

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield transformed chunks; the source is closed when this ends."""
        expected = self._read.length
        delivered = 0
        try:
            async for chunk in self._read.chunks:
                delivered += len(chunk)
                if expected is not None and delivered > expected:
                    msg = f"source delivered more than the declared {expected} bytes"
                    raise TransportError(msg)
                yield apply_keystream(self._keystream, chunk)
            if expected is not None and delivered < expected:
                msg = f"source ended after {delivered} of {expected} bytes"
                raise TransportError(msg)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self._read.aclose()

    def to_response(self) -> Stream:
        headers = dict(self.headers)
        media_type = headers.pop("Content-Type", DEFAULT_CONTENT_TYPE)
        return Stream(
            content=self.iter_bytes(),
            status_code=self.status_code,
            headers=headers,
            media_type=media_type,
        )


def _response_headers(
    read: SourceRead, content_type: str
) -> tuple[int, dict[str, str]]:
    headers = {"Content-Type": content_type, "Accept-Ranges": "bytes"}
    if read.length is not None:
        headers["Content-Length"] = str(read.length)

    if read.partial and read.length is not None:
        served = RangeSpec(offset=read.offset, length=read.length)
        headers["Content-Range"] = served.content_range(read.total_size)
        return 206, headers
    return 200, headers


async def open_relay(
    source: ByteSource,
    key: bytes,
    iv: bytes,
    range_header: str | None = None,
    *,
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> RelayResponse:
    """Open ``source`` and prepare the decrypting response.

    Nothing is written anywhere yet: every error the request can fail with
    before streaming (key material, range, upstream) is raised here.

    Args:
        source: Where the encrypted bytes come from.
        key: Raw AES key, 16, 24 or 32 bytes.
        iv: 16-byte IV the resource was encrypted with at offset 0.
        range_header: Client ``Range`` header, empty or None for the whole resource.
        content_type: Value for the ``Content-Type`` response header.

    Returns:
        RelayResponse whose body must be consumed or closed by the caller.
    """
    validate_key_material(key, iv)
    read = await source.open(range_header or "")
    try:
        keystream = keystream_at(key, iv, read.offset)
    except BaseException:
        await read.aclose()
        raise

    status_code, headers = _response_headers(read, content_type)
    LOG.debug(
        "relay status=%d offset=%d length=%s total=%s",
        status_code,
        read.offset,
        read.length,
        read.total_size,
    )
    return RelayResponse(read, keystream, status_code, headers)


async def relay(
    sink: ResponseSink,
    source: ByteSource,
    key: bytes,
    iv: bytes,
    range_header: str | None = None,
    *,
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> int:
    """Relay ``source`` into ``sink``, returning the number of body bytes written."""
    response = await open_relay(
        source, key, iv, range_header, content_type=content_type
    )
    written = 0
    try:
        try:
            await sink.start(response.status_code, response.headers)
            async for chunk in response.iter_bytes():
                await sink.write(chunk)
                written += len(chunk)
        except OSError as exc:
            msg = f"Failed writing response: {exc}"
            raise TransportError(msg) from exc
    finally:
        await response.aclose()
    return written


async def relay_remote(
    sink: ResponseSink,
    client: httpx.AsyncClient,
    url: str,
    key: bytes,
    iv: bytes,
    range_header: str | None = None,
    *,
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> int:
    return await relay(
        sink,
        RemoteSource(client, url),
        key,
        iv,
        range_header,
        content_type=content_type,
    )


async def relay_local(
    sink: ResponseSink,
    reader: BinaryIO,
    size: int,
    key: bytes,
    iv: bytes,
    range_header: str | None = None,
    *,
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> int:
    return await relay(
        sink,
        LocalSource(reader, size),
        key,
        iv,
        range_header,
        content_type=content_type,
    )
