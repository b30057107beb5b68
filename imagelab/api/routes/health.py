"""Health check endpoint for the imagelab API.

Reports configuration readiness without calling the model or Feishu.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from imagelab.config import APP_VERSION
from imagelab.infrastructure.settings import is_stateless

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service status plus which integrations have credentials configured."""
    has_model_key = bool(os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"))
    has_feishu_app = bool(os.getenv("FEISHU_APP_ID") and os.getenv("FEISHU_APP_SECRET"))
    has_feishu_table = bool(os.getenv("FEISHU_APP_TOKEN") and os.getenv("FEISHU_TABLE_ID"))

    return {
        "status": "healthy",
        "service": "imagelab API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "stateless": is_stateless(),
        "model": {"ready": has_model_key},
        "feishu": {
            "ready": has_feishu_app and has_feishu_table,
            "app_credentials": has_feishu_app,
            "table": has_feishu_table,
        },
    }
