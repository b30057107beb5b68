"""Parsing of mixed text/image model responses."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any

from imagelab.config import EDIT_PROMPT_TEMPLATE
from imagelab.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_IMAGE_MIME = "image/png"


@dataclass
class GeneratedContent:
    text: str = ""
    image_data: bytes | None = None
    mime_type: str = DEFAULT_IMAGE_MIME

    @property
    def has_image(self) -> bool:
        return bool(self.image_data)

    @property
    def image_base64(self) -> str:
        return base64.b64encode(self.image_data or b"").decode("ascii")


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _decode(data: Any) -> bytes | None:
    if isinstance(data, bytes | bytearray):
        return bytes(data) or None
    if isinstance(data, str) and data:
        try:
            return base64.b64decode(data, validate=False)
        except (binascii.Error, ValueError):
            logger.warning("Model returned undecodable inline image data")
    return None


def extract_generated_content(response: Any) -> GeneratedContent:
    """Pull text and image out of ``candidates[0].content.parts``.

    The last inline image and the last text part win.  Missing structure
    yields an empty result rather than an error.
    """
    result = GeneratedContent()

    candidates = _field(response, "candidates") or []
    if not candidates:
        return result

    content = _field(candidates[0], "content")
    parts = _field(content, "parts") if content is not None else None
    for part in parts or []:
        inline = _field(part, "inline_data")
        if inline is not None:
            data = _decode(_field(inline, "data"))
            if data:
                result.image_data = data
                result.mime_type = _field(inline, "mime_type") or DEFAULT_IMAGE_MIME
            continue
        text = _field(part, "text")
        if text:
            result.text = text

    return result


def build_edit_prompt(prompt: str) -> str:
    return EDIT_PROMPT_TEMPLATE.format(prompt=prompt)
