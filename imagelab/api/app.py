"""FastAPI server for the imagelab image generation backend"""

from __future__ import annotations

from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from imagelab.api.middleware.rate_limit import RateLimitMiddleware
from imagelab.api.models import ErrorCode
from imagelab.api.routes.admin import router as admin_router
from imagelab.api.routes.editing import router as editing_router
from imagelab.api.routes.generation import router as generation_router
from imagelab.api.routes.health import router as health_router
from imagelab.api.routes.images import router as images_router
from imagelab.api.routes.proxy import router as proxy_router
from imagelab.api.routes.upload import router as upload_router
from imagelab.config import APP_VERSION, CORS_ORIGINS, IMAGES_URL_PREFIX, RATE_LIMIT_RPH, RATE_LIMIT_RPM
from imagelab.images.repository import get_image_repository
from imagelab.infrastructure.settings import is_stateless
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import counter, log_event

# Load environment variables from .env file
load_dotenv()

app = FastAPI(title="imagelab API", version=APP_VERSION)

logger = get_logger(__name__)


# Custom validation error handler to prevent information leakage
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    logger.warning("Validation error on %s: %s", request.url.path, errors)
    counter("api.validation_errors")

    if any(err.get("type") == "json_invalid" for err in errors):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "data": None,
                "error": {"code": ErrorCode.JSON_PARSE_ERROR, "message": "Invalid JSON in request body"},
            },
        )

    invalid_fields = [str(err["loc"][-1]) for err in errors if err.get("loc")]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "data": None,
            "error": {
                "code": ErrorCode.INVALID_REQUEST,
                "message": "Invalid request format. Please check your request and try again.",
                "details": ", ".join(invalid_fields),
            },
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# Every generate/edit call costs a model request
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=RATE_LIMIT_RPM,
    requests_per_hour=RATE_LIMIT_RPH,
)

# Local storage is optional; Feishu is the system of record
try:
    get_image_repository().init_directories()
except OSError as e:
    logger.error("Local storage unavailable, continuing with Feishu only: %s", e)

app.include_router(health_router)
app.include_router(generation_router)
app.include_router(editing_router)
app.include_router(upload_router)
app.include_router(images_router)
app.include_router(proxy_router)
app.include_router(admin_router)

if not is_stateless():
    app.mount(
        IMAGES_URL_PREFIX.rstrip("/"),
        StaticFiles(directory=get_image_repository().images_dir, check_dir=False),
        name="generated-images",
    )

log_event("api.startup", service="imagelab", version=APP_VERSION, stateless=is_stateless())


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "imagelab API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "generate": "/api/generate",
            "edit": "/api/edit",
            "edit_prepare": "/api/edit-prepare",
            "edit_execute": "/api/edit-execute",
            "save_to_feishu": "/api/save-to-feishu",
            "upload": "/api/upload",
            "image_metadata": "/api/image-metadata",
            "image_proxy": "/api/image-proxy",
            "images_with_history": "/api/images-with-history",
            "image_history": "/api/image-history/{image_id}",
            "edit_history": "/api/edit-history/{image_id}",
            "admin_cleanup": "/api/admin/cleanup",
        },
    }
