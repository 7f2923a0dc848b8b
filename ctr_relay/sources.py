from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol

import httpx
from anyio import to_thread
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import InvalidRangeFormat, SourceStatusError, TransportError
from .ranges import (
    ContentRange,
    RangeSpec,
    parse_content_range,
    parse_range,
    parse_range_offset,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

LOG = logging.getLogger("ctr_relay.sources")

CHUNK_SIZE = 1024 * 64

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


@dataclass
class SourceRead:
    """A bounded byte sequence opened for one request.

    ``offset`` is the position in the resource of the first byte ``chunks``
    yields. ``length`` and ``total_size`` are None when the source cannot
    tell them up front.
    """

    offset: int
    length: int | None
    total_size: int | None
    partial: bool
    chunks: AsyncIterator[bytes]
    closer: Callable[[], Awaitable[None]] | None = None
    _closed: bool = field(default=False, init=False, repr=False)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self.chunks, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self.closer is not None:
                await self.closer()


class ByteSource(Protocol):
    """Anything that can open a bounded byte sequence for a Range header."""

    async def open(self, range_header: str) -> SourceRead: ...


class RemoteSource:
    """Resource fetched over HTTP with an injected client.

    The Range header is forwarded verbatim; the upstream is trusted to
    validate it against the resource size.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._client = client
        self._url = url
        self._headers = dict(headers or {})

    async def open(self, range_header: str) -> SourceRead:
        offset = parse_range_offset(range_header)

        headers = {"Accept-Encoding": "identity", **self._headers}
        if range_header:
            headers["Range"] = range_header
        request = self._client.build_request("GET", self._url, headers=headers)
        LOG.debug("fetching %s range=%s", self._url, range_header or "-")

        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            msg = f"Failed to fetch {self._url}: {exc}"
            raise TransportError(msg) from exc

        try:
            return self._to_read(response, range_header, offset)
        except BaseException:
            await response.aclose()
            raise

    def _to_read(
        self, response: httpx.Response, range_header: str, offset: int
    ) -> SourceRead:
        status = response.status_code
        if status >= 400:
            raise SourceStatusError(status, self._url)

        content_length = self._content_length(response)

        if range_header and status == 206:
            content_range = self._content_range(response)
            total_size = content_range.total if content_range else None
            length = content_length
            if length is None and content_range is not None:
                length = content_range.length
            if length is None:
                msg = f"Upstream partial response for {self._url} declares no length"
                raise TransportError(msg)
            if length == 0:
                msg = f"Upstream partial response for {self._url} is empty"
                raise TransportError(msg)
            if content_range is not None and content_range.start != offset:
                LOG.warning(
                    "upstream served range starting at %d, requested %d (%s)",
                    content_range.start,
                    offset,
                    self._url,
                )
            partial_read = True
        else:
            if range_header:
                LOG.debug(
                    "upstream answered %d to range %s, serving whole resource",
                    status,
                    range_header,
                )
            offset = 0
            total_size = length = content_length
            partial_read = False

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_raw():
                    yield chunk
            except httpx.HTTPError as exc:
                msg = f"Failed reading {self._url}: {exc}"
                raise TransportError(msg) from exc

        return SourceRead(
            offset=offset,
            length=length,
            total_size=total_size,
            partial=partial_read,
            chunks=chunks(),
            closer=response.aclose,
        )

    def _content_length(self, response: httpx.Response) -> int | None:
        value = response.headers.get("content-length")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            LOG.warning("ignoring invalid Content-Length %r from %s", value, self._url)
            return None

    def _content_range(self, response: httpx.Response) -> ContentRange | None:
        value = response.headers.get("content-range")
        if not value:
            return None
        try:
            return parse_content_range(value)
        except InvalidRangeFormat:
            LOG.warning("ignoring invalid Content-Range %r from %s", value, self._url)
            return None


class LocalSource:
    """Byte-addressable reader of known size, such as an open file."""

    def __init__(self, reader: BinaryIO, size: int, *, close_reader: bool = False):
        self._reader = reader
        self._size = size
        self._close_reader = close_reader

    @property
    def size(self) -> int:
        return self._size

    async def open(self, range_header: str) -> SourceRead:
        try:
            spec = parse_range(range_header, self._size)
        except BaseException:
            await self.aclose()
            raise

        if isinstance(spec, RangeSpec):
            offset, length, partial_read = spec.offset, spec.length, True
        else:
            offset, length, partial_read = 0, self._size, False

        reader = self._reader

        async def chunks() -> AsyncIterator[bytes]:
            remaining = length
            try:
                await _run_sync(reader.seek, offset)
                while remaining > 0:
                    chunk = await _run_sync(reader.read, min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield chunk
            except OSError as exc:
                msg = f"Failed reading local source at offset {offset}: {exc}"
                raise TransportError(msg) from exc

        return SourceRead(
            offset=offset,
            length=length,
            total_size=self._size,
            partial=partial_read,
            chunks=chunks(),
            closer=self.aclose,
        )

    async def aclose(self) -> None:
        if self._close_reader and not self._reader.closed:
            await _run_sync(self._reader.close)


def _open_file(path: Path) -> tuple[BinaryIO, int]:
    reader = path.open("rb")
    try:
        size = os.fstat(reader.fileno()).st_size
    except OSError:
        reader.close()
        raise
    return reader, size


class FileSource:
    """File on local disk, opened only when the relay asks for it."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    async def open(self, range_header: str) -> SourceRead:
        try:
            reader, size = await _run_sync(_open_file, self._path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise SourceStatusError(404, str(self._path)) from exc
        except OSError as exc:
            msg = f"Failed to open {self._path}: {exc}"
            raise TransportError(msg) from exc
        return await LocalSource(reader, size, close_reader=True).open(range_header)


class S3Source:
    """Object in S3-compatible storage, addressed through a boto3 client."""

    def __init__(self, client: Any, bucket: str, key: str) -> None:
        self._client = client
        self._bucket = bucket
        self._key = key

    @property
    def url(self) -> str:
        return f"s3://{self._bucket}/{self._key}"

    async def open(self, range_header: str) -> SourceRead:
        head = await self._call(
            self._client.head_object, Bucket=self._bucket, Key=self._key
        )
        size = int(head.get("ContentLength", 0))
        spec = parse_range(range_header, size)

        get_kwargs: dict[str, Any] = {"Bucket": self._bucket, "Key": self._key}
        if isinstance(spec, RangeSpec):
            get_kwargs["Range"] = f"bytes={spec.offset}-{spec.end}"
            offset, length, partial_read = spec.offset, spec.length, True
        else:
            offset, length, partial_read = 0, size, False

        result = await self._call(self._client.get_object, **get_kwargs)
        body = result["Body"]
        LOG.debug("GET %s range=%s size=%d", self.url, get_kwargs.get("Range"), size)

        async def chunks() -> AsyncIterator[bytes]:
            try:
                while True:
                    chunk = await _run_sync(body.read, CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
            except (BotoCoreError, OSError) as exc:
                msg = f"Failed reading {self.url}: {exc}"
                raise TransportError(msg) from exc

        async def close() -> None:
            await _run_sync(body.close)

        return SourceRead(
            offset=offset,
            length=length,
            total_size=size,
            partial=partial_read,
            chunks=chunks(),
            closer=close,
        )

    async def _call(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return await _run_sync(func, **kwargs)
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code in _NOT_FOUND_CODES:
                raise SourceStatusError(404, self.url) from error
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if isinstance(status, int) and status >= 400:
                raise SourceStatusError(status, self.url) from error
            msg = f"S3 request for {self.url} failed: {error}"
            raise TransportError(msg) from error
        except BotoCoreError as error:
            msg = f"S3 request for {self.url} failed: {error}"
            raise TransportError(msg) from error
