"""
Image payload checks and mime helpers.

Validation never rejects an image for size or type; Feishu enforces its own
10MB limit, so oversize and unusual types only produce warnings.
"""

from __future__ import annotations

import base64
import binascii
import re

from imagelab.config import IMAGE_SIZE_WARNING_MB, SUPPORTED_MIME_TYPES
from imagelab.images.models import ValidatedImage
from imagelab.observability.logging import get_logger

logger = get_logger(__name__)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.+)$", re.DOTALL)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}

_MIME_BY_EXTENSION = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}


class InvalidImageError(ValueError):
    """Image payload is empty or unreadable."""


class InvalidDataUrl(ValueError):
    """String is not a ``data:<mime>;base64,<payload>`` URL."""


def validate_image(data: bytes, mime_type: str) -> ValidatedImage:
    """
    Check an image payload before it is stored.

    Raises:
        InvalidImageError: If data is empty
    """
    if not data:
        raise InvalidImageError("Image data is empty")

    size_mb = len(data) / (1024 * 1024)
    warnings: list[str] = []

    if size_mb > IMAGE_SIZE_WARNING_MB:
        warnings.append(f"Image is {size_mb:.2f}MB, close to the 10MB storage limit")
        logger.warning("Large image: %.2fMB (%s)", size_mb, mime_type)

    if mime_type not in SUPPORTED_MIME_TYPES:
        warnings.append(f"Unusual image type {mime_type}")
        logger.warning("Unsupported mime type %s; storing anyway", mime_type)

    return ValidatedImage(data=data, mime_type=mime_type, size_mb=round(size_mb, 3), warnings=warnings)


def parse_data_url(url: str) -> tuple[bytes, str]:
    """Decode a base64 data URL into (bytes, mime_type)."""
    match = _DATA_URL.match(url.strip()) if url else None
    if not match:
        raise InvalidDataUrl("Invalid data URL format")
    try:
        data = base64.b64decode(match.group("payload"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise InvalidDataUrl(f"Invalid base64 payload: {exc}") from exc
    if not data:
        raise InvalidDataUrl("Data URL has an empty payload")
    return data, match.group("mime")


def extension_for_mime(mime_type: str) -> str:
    if mime_type in _EXTENSIONS:
        return _EXTENSIONS[mime_type]
    return mime_type.split("/")[-1] or "png"


def mime_for_extension(extension: str) -> str:
    return _MIME_BY_EXTENSION.get(extension.lower().lstrip("."), "image/jpeg")
