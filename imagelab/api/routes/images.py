"""
Gallery and lineage endpoints.

Provides endpoints for:
- Local image metadata lookup
- The full lineage forest for the gallery
- One image's lineage group and ancestor path
- One image's edit history
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from imagelab.api.models import ErrorCode, error_response, ok
from imagelab.feishu.models import ImageRecord
from imagelab.images.service import get_image_service
from imagelab.infrastructure.settings import is_stateless
from imagelab.lineage.forest import ImageGroup
from imagelab.observability.logging import get_logger

router = APIRouter(prefix="/api", tags=["images"])
logger = get_logger(__name__)


def _record_dict(record: ImageRecord | None) -> dict[str, Any] | None:
    if record is None:
        return None
    data = record.model_dump()
    data["created_at"] = record.created_at
    return data


def _group_dict(group: ImageGroup) -> dict[str, Any]:
    return {
        "id": group.id,
        "original": _record_dict(group.original),
        "edits": [_record_dict(edit) for edit in group.edits],
        "edit_history": [entry.model_dump() for entry in group.edit_history],
        "promoted": group.promoted,
    }


# ============================================================================
# Local metadata
# ============================================================================


@router.get("/image-metadata", response_model=None)
async def image_metadata(
    path: str | None = Query(None),
    id: str | None = Query(None),  # noqa: A002
) -> dict[str, Any] | JSONResponse:
    if not path and not id:
        return error_response(ErrorCode.MISSING_PATH, "Image path or id is required")

    if is_stateless():
        return error_response(
            ErrorCode.STATELESS_ENVIRONMENT,
            "Local image metadata is not available in stateless environments",
            status_code=404,
        )

    try:
        metadata = get_image_service().image_metadata(path=path, image_id=id)
    except Exception as e:
        logger.error("Metadata lookup failed for %s: %s", path or id, e)
        return error_response(ErrorCode.METADATA_ERROR, "Failed to read image metadata", status_code=500, error=e)

    if metadata is None:
        return error_response(ErrorCode.IMAGE_NOT_FOUND, "Image metadata not found", status_code=404)

    return ok(metadata.to_dict())


# ============================================================================
# Lineage
# ============================================================================


@router.get("/images-with-history", response_model=None)
async def images_with_history() -> dict[str, Any] | JSONResponse:
    try:
        forest = await get_image_service().images_with_history()
    except Exception as e:
        logger.error("Failed to build image forest: %s", e)
        return error_response(
            ErrorCode.GET_IMAGES_HISTORY_FAILED, "Failed to load image history", status_code=500, error=e
        )

    return ok(
        {
            "image_groups": [_group_dict(group) for group in forest.groups],
            "total": forest.total,
            "stats": forest.stats.model_dump(),
        }
    )


@router.get("/image-history/{image_id}", response_model=None)
async def image_history(image_id: str) -> dict[str, Any] | JSONResponse:
    try:
        group, lineage = await get_image_service().image_history(image_id)
    except Exception as e:
        logger.error("Failed to load history for %s: %s", image_id, e)
        return error_response(
            ErrorCode.GET_IMAGE_HISTORY_FAILED, "Failed to load image history", status_code=500, error=e
        )

    if group is None:
        return error_response(ErrorCode.IMAGE_NOT_FOUND, "Image not found", status_code=404)

    original = group.original
    return ok(
        {
            "original_image": _record_dict(original),
            "edits": [_record_dict(edit) for edit in group.edits],
            "uploaded_image": _record_dict(original) if original is not None and original.is_uploaded else None,
            "lineage": [_record_dict(node) for node in lineage],
        }
    )


@router.get("/edit-history/{image_id}", response_model=None)
async def edit_history(image_id: str) -> dict[str, Any] | JSONResponse:
    try:
        history = await get_image_service().edit_history(image_id)
    except Exception as e:
        logger.error("Failed to load edit history for %s: %s", image_id, e)
        return error_response(
            ErrorCode.GET_EDIT_HISTORY_FAILED, "Failed to load edit history", status_code=500, error=e
        )

    return ok({"history": [entry.model_dump() for entry in history]})
