"""
Gemini image client manager - singleton for the shared genai client.

The image model returns mixed TEXT + IMAGE parts, which only the google-genai
SDK exposes; the client is created once per process from GEMINI_API_KEY
(GOOGLE_API_KEY as fallback).
"""

from __future__ import annotations

import os
from functools import lru_cache

from google import genai
from google.genai import types

from imagelab.infrastructure.settings import (
    GEMINI_MODEL,
    GEMINI_TEMPERATURE,
    GEMINI_TOP_K,
    GEMINI_TOP_P,
)
from imagelab.observability.logging import get_logger

logger = get_logger(__name__)


class ImageModelError(RuntimeError):
    """Base exception for image model failures."""


class ImageModelInitializationError(ImageModelError):
    """Raised when the genai client cannot be initialized."""


class ImageModelRateLimited(ImageModelError):
    """Model quota or rate limit hit (HTTP 429)."""


class ImageModelUnavailable(ImageModelError):
    """Transient server-side or network failure."""


class ImageModelBadResponse(ImageModelError):
    """Model returned a body that could not be parsed."""


@lru_cache(maxsize=1)
def get_image_client() -> genai.Client:
    """
    Get or create the shared genai client.

    Raises:
        ImageModelInitializationError: If no API key is configured
    """
    # Read env vars fresh (settings may have been imported before dotenv ran)
    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise ImageModelInitializationError("GEMINI_API_KEY or GOOGLE_API_KEY not set")

    client = genai.Client(api_key=api_key)
    logger.info("Initialized genai client for model=%s", get_model_name())
    return client


def get_model_name() -> str:
    return os.getenv("GEMINI_MODEL") or GEMINI_MODEL


def build_generation_config() -> types.GenerateContentConfig:
    return types.GenerateContentConfig(
        temperature=GEMINI_TEMPERATURE,
        top_p=GEMINI_TOP_P,
        top_k=GEMINI_TOP_K,
        response_modalities=["TEXT", "IMAGE"],
    )


def text_part(text: str) -> types.Part:
    return types.Part(text=text)


def image_part(data: bytes, mime_type: str) -> types.Part:
    return types.Part(inline_data=types.Blob(data=data, mime_type=mime_type))
