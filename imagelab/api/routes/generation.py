"""
Image generation endpoints.

Provides endpoints for:
- Generating an image from a text prompt
- One-shot editing of an existing image
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from imagelab.api.models import ErrorCode, error_response, ok
from imagelab.images.models import ImageOptions
from imagelab.images.service import (
    ImageFetchError,
    ImageRecordNotFound,
    ImageSaveError,
    InvalidImageError,
    MissingImageId,
    NoImageGenerated,
    UnsupportedImageUrl,
    get_image_service,
)
from imagelab.llm.gemini import ImageModelRateLimited
from imagelab.observability.logging import get_logger

router = APIRouter(prefix="/api", tags=["generation"])
logger = get_logger(__name__)


class GenerateRequest(BaseModel):
    prompt: str | None = None
    options: ImageOptions | None = None


class EditRequest(BaseModel):
    prompt: str | None = None
    image_url: str | None = None


def _rate_limited() -> JSONResponse:
    return error_response(
        ErrorCode.RATE_LIMIT_EXCEEDED,
        "Image model rate limit exceeded, please try again later",
        status_code=429,
    )


@router.post("/generate", response_model=None)
async def generate_image(request: GenerateRequest) -> dict[str, Any] | JSONResponse:
    """Generate an image from a prompt and store it in Feishu (and locally)."""
    if not request.prompt or not request.prompt.strip():
        return error_response(ErrorCode.MISSING_PROMPT, "Prompt is required")

    try:
        result = await get_image_service().generate(request.prompt, request.options)
    except ImageModelRateLimited:
        return _rate_limited()
    except NoImageGenerated:
        return error_response(ErrorCode.NO_IMAGE_GENERATED, "No image was generated", status_code=500)
    except (ImageSaveError, InvalidImageError) as e:
        return error_response(ErrorCode.IMAGE_SAVE_ERROR, "Failed to save image", status_code=500, error=e)
    except Exception as e:
        logger.error("Image generation failed: %s", e)
        return error_response(ErrorCode.GENERATION_FAILED, "Failed to generate image", status_code=500, error=e)

    logger.info("Generated image %s", result.metadata.id)
    return ok(result)


@router.post("/edit", response_model=None)
async def edit_image(request: EditRequest) -> dict[str, Any] | JSONResponse:
    """Edit an existing image in one call (resolve, edit, store)."""
    if not request.prompt or not request.prompt.strip():
        return error_response(ErrorCode.MISSING_PROMPT, "Prompt is required")
    if not request.image_url:
        return error_response(ErrorCode.MISSING_IMAGE_URL, "Image URL is required")

    try:
        result = await get_image_service().edit(request.prompt, request.image_url)
    except UnsupportedImageUrl as e:
        return error_response(ErrorCode.INVALID_URL, str(e))
    except MissingImageId as e:
        return error_response(ErrorCode.MISSING_IMAGE_ID, str(e))
    except ImageRecordNotFound as e:
        return error_response(ErrorCode.INVALID_IMAGE_ID, "Image record not found", error=e)
    except ImageFetchError as e:
        return error_response(ErrorCode.IMAGE_FETCH_FAILED, "Failed to fetch source image", error=e)
    except ImageModelRateLimited:
        return _rate_limited()
    except NoImageGenerated:
        return error_response(ErrorCode.NO_IMAGE_GENERATED, "No image was generated", status_code=500)
    except Exception as e:
        logger.error("Image edit failed: %s", e)
        return error_response(ErrorCode.EDIT_FAILED, "Failed to edit image", status_code=500, error=e)

    logger.info("Edited %s into %s", request.image_url, result.metadata.id)
    return ok(result)
