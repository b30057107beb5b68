"""Admin maintenance endpoints (bearer API key required)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from imagelab.api.middleware.auth import require_admin_auth
from imagelab.api.models import ErrorCode, error_response, ok
from imagelab.config import CLEANUP_MAX_AGE_DAYS
from imagelab.images.repository import StatelessStorageError
from imagelab.images.service import get_image_service
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import log_event

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = get_logger(__name__)


@router.post("/cleanup", response_model=None)
async def cleanup_images(
    max_age_days: int = Query(CLEANUP_MAX_AGE_DAYS, ge=0),
    authenticated: bool = Depends(require_admin_auth),
) -> dict[str, Any] | JSONResponse:
    """Delete local images (and their metadata) older than ``max_age_days``."""
    try:
        deleted = get_image_service().cleanup(max_age_days)
    except StatelessStorageError as e:
        return error_response(ErrorCode.STATELESS_ENVIRONMENT, str(e), status_code=404)
    except Exception as e:
        logger.error("Cleanup failed: %s", e)
        return error_response(ErrorCode.CLEANUP_FAILED, "Failed to clean up images", status_code=500, error=e)

    log_event("api.admin.cleanup", deleted=deleted, max_age_days=max_age_days)
    return ok({"deleted": deleted})
