"""Centralized configuration for the imagelab backend.

Re-exports everything from imagelab.infrastructure.settings so existing imports
continue to work, then adds typed constants for the image model, Feishu,
storage and API settings.  Environment variable overrides use safe defaults so
the app starts without extra env configuration.

Env vars use IMAGELAB_* as primary with the legacy unprefixed names as fallback.
"""

from __future__ import annotations

import os

from imagelab.infrastructure.settings import *  # noqa: F401, F403  re-export existing


def _env(new_key: str, old_key: str, default: str) -> str:
    """Read env var with IMAGELAB_* primary and legacy fallback."""
    return os.getenv(new_key, os.getenv(old_key, default))


# --- App ---
APP_VERSION: str = "1.0.0"

# --- Image model ---
MODEL_MAX_RETRIES: int = int(_env("IMAGELAB_MODEL_MAX_RETRIES", "MODEL_MAX_RETRIES", "3"))
MODEL_RETRY_DELAY_SECONDS: float = float(
    _env("IMAGELAB_MODEL_RETRY_DELAY", "MODEL_RETRY_DELAY", "2.0")
)
EDIT_PROMPT_TEMPLATE: str = (
    "请根据以下描述生成一张图片：{prompt}。\n\n"
    "要求：\n"
    "- 请不要在图片中添加任何文字\n"
    "- 只生成纯粹的图像内容而没有文字叠加\n"
    "- 图片只包含相关视觉元素，不包含文字\n"
    "- 请不要将指令作为图片内容的一部分"
)

# --- Feishu ---
FEISHU_TOKEN_TIMEOUT: float = 30.0
FEISHU_UPLOAD_TIMEOUT: float = 60.0
FEISHU_RECORD_TIMEOUT: float = 30.0
FEISHU_DOWNLOAD_TIMEOUT: float = 10.0
FEISHU_TOKEN_SAFETY_MARGIN_SECONDS: int = 300
FEISHU_PAGE_SIZE: int = int(_env("IMAGELAB_FEISHU_PAGE_SIZE", "FEISHU_PAGE_SIZE", "100"))
FEISHU_MAX_RETRIES: int = int(_env("IMAGELAB_FEISHU_MAX_RETRIES", "FEISHU_MAX_RETRIES", "3"))
# Bitable column holding the image kind; empty string disables writing it
FEISHU_TYPE_FIELD: str = _env("IMAGELAB_FEISHU_TYPE_FIELD", "FEISHU_TYPE_FIELD", "type")

# --- Images ---
IMAGE_SIZE_WARNING_MB: float = 9.5
SUPPORTED_MIME_TYPES: frozenset[str] = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
)
DEFAULT_PROMPT: str = "No prompt provided"
UPLOAD_DEFAULT_PROMPT: str = "User uploaded original image"
SAVE_DEFAULT_PROMPT: str = "Edited image"
CLEANUP_MAX_AGE_DAYS: int = 7
METADATA_LIST_LIMIT: int = 100

# --- Image proxy ---
PROXY_CACHE_CONTROL: str = "public, max-age=86400"

# --- API ---
ADMIN_API_KEY_ENV: str = "IMAGELAB_ADMIN_API_KEY"
RATE_LIMIT_RPM: int = int(_env("IMAGELAB_RATE_LIMIT_RPM", "RATE_LIMIT_RPM", "30"))
RATE_LIMIT_RPH: int = int(_env("IMAGELAB_RATE_LIMIT_RPH", "RATE_LIMIT_RPH", "500"))
RATE_LIMIT_MAX_IPS: int = 10000
CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in _env("IMAGELAB_CORS_ORIGINS", "CORS_ORIGINS", "*").split(",")
    if origin.strip()
]
