"""
Application-wide settings and environment configuration

Credentials (Gemini, Feishu, the admin key) are read where they are used, at
call time, so a late ``load_dotenv()`` or a test's ``monkeypatch.setenv``
still takes effect.
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Gemini image model
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp")
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "1.0"))
GEMINI_TOP_P = float(os.getenv("GEMINI_TOP_P", "0.95"))
GEMINI_TOP_K = int(os.getenv("GEMINI_TOP_K", "40"))

# Feishu open platform
FEISHU_DEFAULT_BASE_URL = "https://open.feishu.cn/open-apis"
FEISHU_HOST = "open.feishu.cn"

# Local storage (skipped entirely in stateless deployments)
PUBLIC_DIR = Path(os.getenv("IMAGELAB_PUBLIC_DIR", str(PROJECT_ROOT / "public")))
DATA_DIR = Path(os.getenv("IMAGELAB_DATA_DIR", str(PROJECT_ROOT / "data")))
METADATA_DIR = DATA_DIR / "metadata"
EDIT_HISTORY_DIR = DATA_DIR / "edit-history"
IMAGES_URL_PREFIX = "/generated-images/"


def is_production() -> bool:
    """Check if running in production"""
    return os.getenv("IMAGELAB_ENV", "development") == "production"


def is_stateless() -> bool:
    """True when the deployment has no writable local disk (e.g. Vercel).

    Read on every call so tests and late-loaded .env files take effect.
    """
    flag = os.getenv("IMAGELAB_STATELESS")
    if flag is None:
        return os.getenv("VERCEL") == "1"
    return flag.lower() in ("1", "true", "yes")
