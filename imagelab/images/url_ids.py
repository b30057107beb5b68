"""
Image URL classification and id extraction.

The client hands back whatever URL it is displaying: a Feishu storage URL, a
proxied Feishu URL (/api/image-proxy?url=...), a local /generated-images path
or a data URL.  These helpers turn any of them into the image id used for
record lookup.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qs, urlparse

from imagelab.infrastructure.settings import FEISHU_HOST

PROXY_PATH = "/api/image-proxy"

FEISHU_KEY_RE = re.compile(r"img_v3_[\w-]+")
UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_UUID_EXACT_RE = re.compile(rf"^{UUID_RE.pattern}$", re.IGNORECASE)
_IMAGES_SEGMENT_RE = re.compile(r"/images/([^/?&#]+)")
_LOCAL_IMAGE_RE = re.compile(r"images/([A-Za-z0-9_-]+)\.(?:png|jpe?g|webp|gif)$", re.IGNORECASE)


def is_feishu_url(url: str | None) -> bool:
    return bool(url) and FEISHU_HOST in url


def is_proxy_url(url: str | None) -> bool:
    return bool(url) and PROXY_PATH in url and "url=" in url


def is_local_url(url: str | None) -> bool:
    return bool(url) and url.startswith("/") and not url.startswith("/api/")


def is_data_url(url: str | None) -> bool:
    return bool(url) and url.startswith("data:")


def unwrap_proxy_url(url: str) -> str | None:
    """Return the Feishu URL wrapped in an image-proxy URL."""
    values = parse_qs(urlparse(url).query).get("url")
    return values[0] if values else None


def _query_param(url: str, name: str) -> str | None:
    values = parse_qs(urlparse(url).query).get(name)
    return values[0] if values and values[0] else None


def extract_image_id(url: str | None) -> str | None:
    """
    Pull the most specific image identifier out of a URL.

    Tried in order: Feishu image key, ``image_key`` query, ``id`` query,
    ``/images/<id>`` path segment, last long path segment, any UUID.
    """
    if not url:
        return None

    match = FEISHU_KEY_RE.search(url)
    if match:
        return match.group(0)

    for param in ("image_key", "id"):
        value = _query_param(url, param)
        if value:
            return value

    match = _IMAGES_SEGMENT_RE.search(url)
    if match:
        return match.group(1)

    path = urlparse(url).path
    for segment in reversed(path.split("/")):
        if len(segment) > 8 and segment != "open-apis":
            return segment

    match = UUID_RE.search(url)
    if match:
        return match.group(0)

    return None


def local_image_id(url: str) -> str | None:
    """Filename stem of a local ``...images/<stem>.<ext>`` URL."""
    match = _LOCAL_IMAGE_RE.search(url.split("?", 1)[0])
    return match.group(1) if match else None


def is_image_id(value: str | None) -> bool:
    """True for a UUID record id or a Feishu image key."""
    if not value:
        return False
    return bool(_UUID_EXACT_RE.match(value) or FEISHU_KEY_RE.fullmatch(value))


def feishu_image_key(url: str) -> str | None:
    """Image key of a Feishu storage URL (``image_key`` query or embedded key)."""
    key = _query_param(url, "image_key")
    if key:
        return key
    match = FEISHU_KEY_RE.search(url)
    return match.group(0) if match else None
