"""
API response envelope.

Every JSON endpoint (except the raw image proxy) answers with
``{"success": bool, "data": ... | null, "error": {"code", "message", "details"?} | null}``.
"""

from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from imagelab.utils.error_sanitizer import get_safe_error_detail


class ErrorCode:
    """Error codes returned in the envelope."""

    MISSING_PROMPT = "MISSING_PROMPT"
    MISSING_IMAGE_URL = "MISSING_IMAGE_URL"
    MISSING_IMAGE_SOURCE = "MISSING_IMAGE_SOURCE"
    MISSING_IMAGE_ID = "MISSING_IMAGE_ID"
    INVALID_URL = "INVALID_URL"
    INVALID_IMAGE_ID = "INVALID_IMAGE_ID"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_REQUEST = "INVALID_REQUEST"
    IMAGE_FETCH_FAILED = "IMAGE_FETCH_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NO_IMAGE_GENERATED = "NO_IMAGE_GENERATED"
    IMAGE_SAVE_ERROR = "IMAGE_SAVE_ERROR"
    GENERATION_FAILED = "GENERATION_FAILED"
    EDIT_FAILED = "EDIT_FAILED"
    PREPARATION_FAILED = "PREPARATION_FAILED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    SAVE_ERROR = "SAVE_ERROR"
    MISSING_IMAGE_DATA = "MISSING_IMAGE_DATA"
    MISSING_MIME_TYPE = "MISSING_MIME_TYPE"
    SAVE_TO_FEISHU_FAILED = "SAVE_TO_FEISHU_FAILED"
    MISSING_IMAGE = "MISSING_IMAGE"
    UPLOAD_ERROR = "UPLOAD_ERROR"
    MISSING_PATH = "MISSING_PATH"
    IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"
    STATELESS_ENVIRONMENT = "STATELESS_ENVIRONMENT"
    METADATA_ERROR = "METADATA_ERROR"
    GET_IMAGES_HISTORY_FAILED = "GET_IMAGES_HISTORY_FAILED"
    GET_IMAGE_HISTORY_FAILED = "GET_IMAGE_HISTORY_FAILED"
    GET_EDIT_HISTORY_FAILED = "GET_EDIT_HISTORY_FAILED"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    CLEANUP_FAILED = "CLEANUP_FAILED"


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: str | None = None


def ok(data: Any) -> dict[str, Any]:
    """Success envelope."""
    return {"success": True, "data": jsonable_encoder(data), "error": None}


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    error: Exception | None = None,
    details: str | None = None,
) -> JSONResponse:
    """Error envelope; ``error`` is logged in full and sanitized for the client."""
    if error is not None and details is None:
        details = get_safe_error_detail(error, status_code)
    info = ErrorInfo(code=code, message=message, details=details)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "data": None, "error": info.model_dump(exclude_none=True)},
    )
