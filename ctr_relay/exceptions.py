"""Exception hierarchy for ctr_relay.

Every error the relay surfaces inherits from RelayError so callers can
translate the whole family into HTTP statuses in one place.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class TransportError(RelayError):
    """Network or I/O failure reaching or reading the source, or writing the sink.

    Never retried: the relay is a single forward pass and a failure aborts it.
    """


class SourceStatusError(TransportError):
    """The source answered with an error status instead of content."""

    def __init__(self, status_code: int, location: str) -> None:
        self.status_code = status_code
        self.location = location
        super().__init__(f"Source returned status {status_code} for {location}")


class InvalidKeyMaterial(RelayError):
    """Cipher key has the wrong type or length for AES."""


class InvalidIVLength(RelayError):
    """IV is not exactly one cipher block long.

    Raised as a precondition failure: it means the caller paired an
    incompatible IV with the cipher.
    """

    def __init__(self, length: int) -> None:
        self.length = length
        super().__init__(f"IV must be 16 bytes, got {length}")


class RangeError(RelayError):
    """Client-supplied Range header cannot be honoured."""


class InvalidRangeFormat(RangeError):
    """Range header is not a single `bytes=<start>-<end>` range."""


class RangeOutOfBounds(RangeError):
    """Range is well formed but not satisfiable for the resource."""

    def __init__(self, start: int, end: int, resource_size: int) -> None:
        self.start = start
        self.end = end
        self.resource_size = resource_size
        super().__init__(
            f"Range {start}-{end} not satisfiable for resource of {resource_size} bytes"
        )
