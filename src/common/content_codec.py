from __future__ import annotations

from typing import Final


MAX_CONTENT_BYTES: Final[int] = 50


class CodecError(ValueError):
    """Base error for the content codec."""


class EncodeError(CodecError):
    """Content cannot be packed (too long or not text)."""


class DecodeError(CodecError):
    """Plaintext integer does not unpack to valid UTF-8 text."""


class _EmptyContent(str):
    """Marker returned when the stored plaintext is zero."""

    def __repr__(self) -> str:
        return "EMPTY_CONTENT"


EMPTY_CONTENT: Final[str] = _EmptyContent("(empty content)")


def is_empty_content(value: object) -> bool:
    return value is EMPTY_CONTENT


def content_size(text: str) -> int:
    """Return the UTF-8 byte length of `text`."""
    return len(_utf8(text))


def _utf8(text: str) -> bytes:
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodeError(f"content is not valid Unicode text: {exc.reason}") from exc


def encode(text: str, *, max_bytes: int = MAX_CONTENT_BYTES) -> int:
    """
    Pack `text` into one unsigned integer.

    The UTF-8 bytes are read as the big-endian digits of a base-256 number, so
    "Hi" becomes 0x4869. The byte length is checked before packing; content
    longer than `max_bytes` raises `EncodeError` rather than being truncated.

    Empty text packs to 0, which reads back as `EMPTY_CONTENT`. Leading NUL
    bytes vanish in the packing and do not survive a round trip.
    """
    if not isinstance(text, str):
        raise EncodeError(f"content must be str, got {type(text).__name__}")
    data = _utf8(text)
    if len(data) > max_bytes:
        raise EncodeError(
            f"Content too long: {len(data)} bytes (max {max_bytes} bytes of UTF-8)"
        )
    value = 0
    for b in data:
        value = value * 256 + b
    return value


def decode(value: int) -> str:
    """
    Unpack an integer produced by `encode` back into text.

    Returns `EMPTY_CONTENT` for 0. Raises `DecodeError` for negative values or
    when the unpacked bytes are not valid UTF-8.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"plaintext must be int, got {type(value).__name__}")
    if value < 0:
        raise DecodeError(f"plaintext must be non-negative, got {value}")
    if value == 0:
        return EMPTY_CONTENT

    out = bytearray()
    n = value
    while n > 0:
        out.append(n % 256)
        n //= 256
    out.reverse()

    try:
        return out.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"plaintext {value} is not valid UTF-8") from exc


def fallback_display(value: int) -> str:
    """Display string used when `decode` fails; keeps the raw value visible."""
    return f"Content value: {value}"


__all__ = [
    "MAX_CONTENT_BYTES",
    "EMPTY_CONTENT",
    "CodecError",
    "EncodeError",
    "DecodeError",
    "content_size",
    "encode",
    "decode",
    "fallback_display",
    "is_empty_content",
]
