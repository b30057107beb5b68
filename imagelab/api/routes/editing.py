"""
Two-step edit endpoints used by the chat UI.

- POST /api/edit-prepare: resolve the displayed image to its Feishu record
- POST /api/edit-execute: run the edit and store the result in Feishu
- POST /api/save-to-feishu: persist client-held image data
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from imagelab.api.models import ErrorCode, error_response, ok
from imagelab.images.service import (
    ImageFetchError,
    ImageRecordNotFound,
    ImageSaveError,
    InvalidDataUrl,
    InvalidImageError,
    MissingImageId,
    MissingImageSource,
    NoImageGenerated,
    UnsupportedImageUrl,
    get_image_service,
)
from imagelab.llm.gemini import ImageModelRateLimited
from imagelab.observability.logging import get_logger

router = APIRouter(prefix="/api", tags=["editing"])
logger = get_logger(__name__)


class EditPrepareRequest(BaseModel):
    image_url: str | None = None
    original_image_id: str | None = None
    root_parent_id: str | None = None


class EditExecuteRequest(BaseModel):
    prompt: str | None = None
    prepare_id: str | None = None
    file_token: str | None = None
    parent_id: str | None = None
    root_parent_id: str | None = None
    is_uploaded_image: bool = False
    data_url: str | None = None


class SaveToFeishuRequest(BaseModel):
    image_data: str | None = None
    mime_type: str | None = None
    prompt: str | None = None
    prepare_id: str | None = None
    root_parent_id: str | None = None
    is_uploaded_image: bool = False
    additional_metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/edit-prepare", response_model=None)
async def edit_prepare(request: EditPrepareRequest) -> dict[str, Any] | JSONResponse:
    if not request.image_url:
        return error_response(ErrorCode.MISSING_IMAGE_URL, "Image URL is required")

    try:
        preparation = await get_image_service().prepare_edit(
            request.image_url, request.original_image_id, request.root_parent_id
        )
    except UnsupportedImageUrl as e:
        return error_response(ErrorCode.INVALID_URL, str(e))
    except MissingImageId as e:
        return error_response(ErrorCode.MISSING_IMAGE_ID, str(e))
    except ImageRecordNotFound as e:
        return error_response(
            ErrorCode.PREPARATION_FAILED, "Failed to prepare image for editing", status_code=500, error=e
        )
    except Exception as e:
        logger.error("Edit preparation failed: %s", e)
        return error_response(
            ErrorCode.PREPARATION_FAILED, "Failed to prepare image for editing", status_code=500, error=e
        )

    return ok(preparation)


@router.post("/edit-execute", response_model=None)
async def edit_execute(request: EditExecuteRequest) -> dict[str, Any] | JSONResponse:
    if not request.prompt or not request.prompt.strip():
        return error_response(ErrorCode.MISSING_PROMPT, "Prompt is required")
    if not request.file_token and not request.data_url:
        return error_response(ErrorCode.MISSING_IMAGE_SOURCE, "Missing image source (file_token or data_url)")

    try:
        result = await get_image_service().execute_edit(
            prompt=request.prompt,
            prepare_id=request.prepare_id,
            file_token=request.file_token,
            parent_id=request.parent_id,
            root_parent_id=request.root_parent_id,
            is_uploaded_image=request.is_uploaded_image,
            data_url=request.data_url,
        )
    except MissingImageSource as e:
        return error_response(ErrorCode.MISSING_IMAGE_SOURCE, str(e))
    except ImageModelRateLimited:
        return error_response(
            ErrorCode.RATE_LIMIT_EXCEEDED,
            "Image model rate limit exceeded, please try again later",
            status_code=429,
        )
    except NoImageGenerated:
        return error_response(ErrorCode.NO_IMAGE_GENERATED, "No image was generated", status_code=500)
    except ImageSaveError as e:
        return error_response(ErrorCode.SAVE_ERROR, "Failed to save edited image", status_code=500, error=e)
    except (ImageFetchError, InvalidDataUrl) as e:
        return error_response(ErrorCode.EXECUTION_FAILED, "Failed to execute image edit", status_code=500, error=e)
    except Exception as e:
        logger.error("Edit execution failed: %s", e)
        return error_response(ErrorCode.EXECUTION_FAILED, "Failed to execute image edit", status_code=500, error=e)

    return ok(result)


@router.post("/save-to-feishu", response_model=None)
async def save_to_feishu(request: SaveToFeishuRequest) -> dict[str, Any] | JSONResponse:
    if not request.image_data:
        return error_response(ErrorCode.MISSING_IMAGE_DATA, "Image data is required")
    if not request.mime_type:
        return error_response(ErrorCode.MISSING_MIME_TYPE, "Image MIME type is required")

    try:
        result = await get_image_service().save_to_feishu(
            image_data=request.image_data,
            mime_type=request.mime_type,
            prompt=request.prompt,
            prepare_id=request.prepare_id,
            root_parent_id=request.root_parent_id,
            is_uploaded_image=request.is_uploaded_image,
            additional_metadata=request.additional_metadata,
        )
    except (InvalidDataUrl, InvalidImageError) as e:
        return error_response(ErrorCode.INVALID_IMAGE, str(e))
    except Exception as e:
        logger.error("Save to Feishu failed: %s", e)
        return error_response(ErrorCode.SAVE_TO_FEISHU_FAILED, "Failed to save to Feishu", status_code=500, error=e)

    return ok(result)
