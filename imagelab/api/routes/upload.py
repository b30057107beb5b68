"""User image upload endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, File, Form, UploadFile
from fastapi.responses import JSONResponse

from imagelab.api.models import ErrorCode, error_response, ok
from imagelab.images.service import ImageSaveError, InvalidImageError, get_image_service
from imagelab.observability.logging import get_logger

router = APIRouter(prefix="/api", tags=["upload"])
logger = get_logger(__name__)


@router.post("/upload", response_model=None)
async def upload_image(
    image: UploadFile | None = File(None),
    prompt: str | None = Form(None),
) -> dict[str, Any] | JSONResponse:
    if image is None:
        return error_response(ErrorCode.MISSING_IMAGE, "No image file uploaded")

    data = await image.read()
    if not data:
        return error_response(ErrorCode.MISSING_IMAGE, "Uploaded image is empty")

    mime_type = image.content_type or "image/jpeg"
    try:
        metadata = await get_image_service().upload(data, mime_type, prompt)
    except InvalidImageError as e:
        return error_response(ErrorCode.INVALID_IMAGE, str(e))
    except ImageSaveError as e:
        return error_response(ErrorCode.UPLOAD_ERROR, "Failed to upload image", status_code=500, error=e)
    except Exception as e:
        logger.error("Upload of %s failed: %s", image.filename, e)
        return error_response(ErrorCode.UPLOAD_ERROR, "Failed to upload image", status_code=500, error=e)

    return ok(metadata.to_dict())
