"""Range-aware relay for AES-CTR encrypted resources."""

from .app import create_app
from .ctr import keystream_at, resync_iv
from .exceptions import (
    InvalidIVLength,
    InvalidKeyMaterial,
    InvalidRangeFormat,
    RangeError,
    RangeOutOfBounds,
    RelayError,
    SourceStatusError,
    TransportError,
)
from .proxy import (
    CipherSettings,
    CTRRelayProxy,
    LocalSettings,
    S3Settings,
    UpstreamSettings,
)
from .ranges import (
    WHOLE_RESOURCE,
    ContentRange,
    RangeSpec,
    WholeResource,
    parse_content_range,
    parse_range,
    parse_range_offset,
)
from .relay import (
    BufferedSink,
    RelayResponse,
    open_relay,
    relay,
    relay_local,
    relay_remote,
)
from .sources import FileSource, LocalSource, RemoteSource, S3Source

__all__ = [
    "WHOLE_RESOURCE",
    "BufferedSink",
    "CTRRelayProxy",
    "CipherSettings",
    "ContentRange",
    "FileSource",
    "InvalidIVLength",
    "InvalidKeyMaterial",
    "InvalidRangeFormat",
    "LocalSettings",
    "LocalSource",
    "RangeError",
    "RangeOutOfBounds",
    "RangeSpec",
    "RelayError",
    "RelayResponse",
    "RemoteSource",
    "S3Settings",
    "S3Source",
    "SourceStatusError",
    "TransportError",
    "UpstreamSettings",
    "WholeResource",
    "create_app",
    "keystream_at",
    "open_relay",
    "parse_content_range",
    "parse_range",
    "parse_range_offset",
    "relay",
    "relay_local",
    "relay_remote",
    "resync_iv",
]
