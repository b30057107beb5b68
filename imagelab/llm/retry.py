"""Image model call with retry logic.

Every generate/edit path goes through ``generate_image_content``.  Vendor
exceptions are converted into the ImageModel* hierarchy so callers never
import google.genai; rate limits, transient server errors and unparseable
bodies are retried with a linearly growing wait (2s, 4s, 6s).
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import httpx
from google.genai import errors as genai_errors
from google.genai import types
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_incrementing

from imagelab.config import MODEL_MAX_RETRIES, MODEL_RETRY_DELAY_SECONDS
from imagelab.llm.gemini import (
    ImageModelBadResponse,
    ImageModelError,
    ImageModelRateLimited,
    ImageModelUnavailable,
    build_generation_config,
    get_image_client,
    get_model_name,
)
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import counter, time_block

logger = get_logger(__name__)


def _is_rate_limit(exc: Exception) -> bool:
    if getattr(exc, "code", None) == 429:
        return True
    message = str(exc).lower()
    return "rate limit" in message or "resource_exhausted" in message


@retry(
    stop=stop_after_attempt(MODEL_MAX_RETRIES + 1),
    wait=wait_incrementing(start=MODEL_RETRY_DELAY_SECONDS, increment=MODEL_RETRY_DELAY_SECONDS),
    retry=retry_if_exception_type((ImageModelRateLimited, ImageModelUnavailable, ImageModelBadResponse)),
    reraise=True,
)
async def generate_image_content(parts: Sequence[types.Part]) -> Any:
    """Call the image model with retry and vendor exception conversion.

    Args:
        parts: Prompt text part, optionally followed by an inline image part.

    Returns:
        The raw GenerateContentResponse.

    Raises:
        ImageModelRateLimited: 429 / quota exhausted (retryable).
        ImageModelUnavailable: 5xx or network failure (retryable).
        ImageModelBadResponse: Unparseable response body (retryable).
        ImageModelError: Anything else (not retried, caller handles).
    """
    client = get_image_client()

    try:
        with time_block("model.generate.latency"):
            return await client.aio.models.generate_content(
                model=get_model_name(),
                contents=list(parts),
                config=build_generation_config(),
            )
    except genai_errors.APIError as e:
        if _is_rate_limit(e):
            counter("model.rate_limited")
            logger.warning("Image model rate limited (429), will retry: %s", e)
            raise ImageModelRateLimited(f"Image model rate limited: {e}") from e
        if isinstance(e, genai_errors.ServerError):
            counter("model.server_error")
            logger.warning("Image model server error, will retry: %s", e)
            raise ImageModelUnavailable(f"Image model unavailable: {e}") from e
        logger.error("Image model request rejected: %s", e)
        raise ImageModelError(f"Image model request failed: {e}") from e
    except json.JSONDecodeError as e:
        counter("model.bad_response")
        logger.warning("Image model returned invalid JSON, will retry: %s", e)
        raise ImageModelBadResponse(f"Image model returned invalid JSON: {e}") from e
    except httpx.TransportError as e:
        counter("model.network_error")
        logger.warning("Image model network error, will retry: %s", e)
        raise ImageModelUnavailable(f"Image model network error: {e}") from e
    except ImageModelError:
        raise
    except Exception as e:
        if _is_rate_limit(e):
            counter("model.rate_limited")
            raise ImageModelRateLimited(f"Image model rate limited: {e}") from e
        logger.error("Image model call failed: %s", e)
        raise ImageModelError(f"Image model call failed: {e}") from e
