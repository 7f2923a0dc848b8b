"""AES-CTR keystream positioning.

The IV's last 8 bytes hold a big-endian 64-bit block counter and the first
8 bytes an opaque prefix. Serving from byte ``offset`` means advancing the
counter by ``offset // 16`` blocks and then dropping ``offset % 16`` bytes of
the first keystream block, so the next keystream byte lines up with the
first byte actually delivered.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import InvalidIVLength, InvalidKeyMaterial

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.ciphers import CipherContext

BLOCK_SIZE = 16
IV_SIZE = 16
KEY_SIZES = frozenset({16, 24, 32})

_COUNTER_OFFSET = 8
_COUNTER_MASK = (1 << 64) - 1


def _check_iv(iv: bytes) -> None:
    if len(iv) != IV_SIZE:
        raise InvalidIVLength(len(iv))


def resync_iv(iv: bytes, offset: int) -> bytes:
    """Return the IV whose keystream starts at the block covering ``offset``.

    The counter field wraps modulo 2**64. The prefix is copied unchanged.

    Raises:
        InvalidIVLength: ``iv`` is not 16 bytes.
        ValueError: ``offset`` is negative.
    """
    _check_iv(iv)
    if offset < 0:
        msg = f"offset must be non-negative, got {offset}"
        raise ValueError(msg)

    counter = int.from_bytes(iv[_COUNTER_OFFSET:], "big")
    counter = (counter + offset // BLOCK_SIZE) & _COUNTER_MASK
    return bytes(iv[:_COUNTER_OFFSET]) + counter.to_bytes(8, "big")


def validate_key_material(key: bytes, iv: bytes) -> None:
    """Check key and IV before any I/O is started."""
    if not isinstance(key, (bytes, bytearray, memoryview)):
        msg = f"key must be bytes, got {type(key).__name__}"
        raise InvalidKeyMaterial(msg)
    if len(key) not in KEY_SIZES:
        msg = f"AES key must be 16, 24 or 32 bytes, got {len(key)}"
        raise InvalidKeyMaterial(msg)
    _check_iv(iv)


def keystream_at(key: bytes, iv: bytes, offset: int) -> CipherContext:
    """Build an AES-CTR context whose next output byte covers ``offset``."""
    validate_key_material(key, iv)
    counter_iv = resync_iv(iv, offset)
    try:
        cipher = Cipher(algorithms.AES(bytes(key)), modes.CTR(counter_iv))
    except (TypeError, ValueError) as exc:
        raise InvalidKeyMaterial(str(exc)) from exc

    context = cipher.encryptor()
    skip = offset % BLOCK_SIZE
    if skip:
        context.update(bytes(skip))
    return context


def apply_keystream(context: CipherContext, chunk: bytes) -> bytes:
    # CTR encryption and decryption are the same XOR
    return context.update(chunk)
