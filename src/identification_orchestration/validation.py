"""Payload validation for image and audio identification requests.

Payloads arrive either as raw bytes or as base64 data URLs
(``data:image/jpeg;base64,...``). Validation rejects empty, oversized,
malformed or unrecognised payloads with :class:`ValidationError` before any
provider is contacted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Optional, Union

from .errors import ValidationError

DEFAULT_MAX_PAYLOAD_BYTES = 10 * 1024 * 1024

_DATA_URL_PREFIX = b"data:"


@dataclass(frozen=True)
class DecodedPayload:
    """Validated payload bytes plus the sniffed media type."""

    data: bytes
    media_type: str

    @property
    def kind(self) -> str:
        return self.media_type.split("/", 1)[0]

    @property
    def size(self) -> int:
        return len(self.data)


def sniff_media_type(data: bytes) -> Optional[str]:
    """Identify a payload by its leading signature bytes."""

    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"RIFF") and data[8:12] == b"WAVE":
        return "audio/wav"
    if data.startswith(b"BM"):
        return "image/bmp"
    if data.startswith((b"II*\x00", b"MM\x00*")):
        return "image/tiff"
    if data.startswith(b"OggS"):
        return "audio/ogg"
    if data.startswith(b"fLaC"):
        return "audio/flac"
    if data.startswith(b"ID3") or data[:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
        return "audio/mpeg"
    if data[4:8] == b"ftyp":
        return "audio/mp4" if data[8:11] == b"M4A" else "video/mp4"
    return None


def _split_data_url(raw: bytes) -> bytes:
    header, sep, body = raw.partition(b",")
    if not sep:
        raise ValidationError("Data URL payload is missing its ',' separator")
    if not header.lower().endswith(b";base64"):
        raise ValidationError("Data URL payload must be base64 encoded")
    return body


def _estimated_decoded_size(encoded: bytes) -> int:
    padding = len(encoded) - len(encoded.rstrip(b"="))
    return (len(encoded) * 3) // 4 - padding


def decode_payload(
    payload: Union[bytes, bytearray, str],
    max_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
) -> DecodedPayload:
    """Validate and decode an identification payload."""

    if payload is None:
        raise ValidationError("Payload is required")
    if not isinstance(payload, (bytes, bytearray, str)):
        raise ValidationError(f"Unsupported payload type: {type(payload).__name__}")
    if len(payload) == 0:
        raise ValidationError("Payload is required")

    if isinstance(payload, str):
        try:
            raw = payload.strip().encode("ascii")
        except UnicodeEncodeError:
            raise ValidationError("Text payloads must be base64 or a base64 data URL") from None
        encoded: Optional[bytes] = (
            _split_data_url(raw) if raw.startswith(_DATA_URL_PREFIX) else raw
        )
    else:
        raw = bytes(payload)
        encoded = _split_data_url(raw) if raw.startswith(_DATA_URL_PREFIX) else None

    if encoded is not None:
        if _estimated_decoded_size(encoded) > max_bytes:
            raise ValidationError(_too_large_message(_estimated_decoded_size(encoded), max_bytes))
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Payload is not valid base64") from None
    else:
        data = raw

    if not data:
        raise ValidationError("Payload is empty after decoding")
    if len(data) > max_bytes:
        raise ValidationError(_too_large_message(len(data), max_bytes))

    media_type = sniff_media_type(data)
    if media_type is None:
        raise ValidationError("Payload is not a recognised image or audio encoding")
    return DecodedPayload(data=data, media_type=media_type)


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of payload bytes, used for cache keys."""
    return hashlib.sha256(data).hexdigest()


def _too_large_message(size: int, max_bytes: int) -> str:
    return (
        f"Payload size ({size / 1024 / 1024:.1f}MB) exceeds maximum allowed size "
        f"({max_bytes / 1024 / 1024:.1f}MB)"
    )
