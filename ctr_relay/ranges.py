"""Parsing of HTTP Range and Content-Range headers.

Only the single closed form ``bytes=<start>-<end>`` is accepted. Suffix
ranges (``bytes=-N``), open ranges (``bytes=N-``) and multi-range requests
are rejected rather than partially honoured.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .exceptions import InvalidRangeFormat, RangeOutOfBounds

MAX_OFFSET = (1 << 63) - 1

_RANGE_RE = re.compile(r"bytes=([0-9]+)-([0-9]+)")
_CONTENT_RANGE_RE = re.compile(r"bytes ([0-9]+)-([0-9]+)/([0-9]+|\*)")


@dataclass(frozen=True)
class RangeSpec:
    """A validated byte range of ``length`` bytes starting at ``offset``."""

    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length - 1

    def content_range(self, total: int | None) -> str:
        size = "*" if total is None else str(total)
        return f"bytes {self.offset}-{self.end}/{size}"


@dataclass(frozen=True)
class WholeResource:
    """No range was requested: serve the entire resource."""


WHOLE_RESOURCE = WholeResource()


@dataclass(frozen=True)
class ContentRange:
    """Parsed ``Content-Range`` response header; ``total`` is None for ``*``."""

    start: int
    end: int
    total: int | None

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def _split_range(header: str) -> tuple[int, int]:
    match = _RANGE_RE.fullmatch(header)
    if match is None:
        msg = f"Invalid range format: {header!r}"
        raise InvalidRangeFormat(msg)
    start, end = int(match.group(1)), int(match.group(2))
    if start > MAX_OFFSET or end > MAX_OFFSET:
        msg = f"Range bound too large: {header!r}"
        raise InvalidRangeFormat(msg)
    return start, end


def parse_range(
    header: str | None, resource_size: int
) -> RangeSpec | WholeResource:
    """Parse a Range header against a resource of known size.

    Args:
        header: Raw ``Range`` header value, empty or None when absent.
        resource_size: Total length of the resource in bytes.

    Returns:
        WHOLE_RESOURCE for an absent header, otherwise the validated RangeSpec.

    Raises:
        InvalidRangeFormat: Header is not a single ``bytes=<start>-<end>`` range.
        RangeOutOfBounds: ``start > end`` or ``end`` is past the last byte.
    """
    if not header:
        return WHOLE_RESOURCE

    start, end = _split_range(header)
    if start > end or end >= resource_size:
        raise RangeOutOfBounds(start, end, resource_size)
    return RangeSpec(offset=start, length=end - start + 1)


def parse_range_offset(header: str | None) -> int:
    """Return only the start offset of a Range header.

    Used when the upstream validates the bounds itself. An absent header
    means offset 0.
    """
    if not header:
        return 0
    start, _ = _split_range(header)
    return start


def parse_content_range(value: str) -> ContentRange:
    """Parse an upstream ``Content-Range: bytes <start>-<end>/<total>`` value."""
    match = _CONTENT_RANGE_RE.fullmatch(value.strip())
    if match is None:
        msg = f"Invalid Content-Range: {value!r}"
        raise InvalidRangeFormat(msg)
    start, end = int(match.group(1)), int(match.group(2))
    if start > end:
        msg = f"Invalid Content-Range: {value!r}"
        raise InvalidRangeFormat(msg)
    total = None if match.group(3) == "*" else int(match.group(3))
    return ContentRange(start=start, end=end, total=total)
