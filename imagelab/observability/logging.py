"""Process-wide logging setup for imagelab.

One stream handler on the ``imagelab`` logger; third-party HTTP and SDK
loggers are held at WARNING because they log every Feishu and model request
(including URLs that carry image keys) at INFO.
"""

from __future__ import annotations

import logging
import os
from typing import Final

APP_LOGGER: Final[str] = "imagelab"
_FORMAT: Final[str] = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_NOISY_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore", "google_genai", "urllib3")

_configured: bool = False


def resolve_level(default: str = "INFO") -> int:
    """Level from IMAGELAB_LOG_LEVEL, then LOG_LEVEL; unknown names mean INFO."""
    level_name = os.getenv("IMAGELAB_LOG_LEVEL") or os.getenv("LOG_LEVEL") or default
    level = logging.getLevelName(level_name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | None = None) -> logging.Logger:
    """Attach the imagelab handler once and (re)apply the level."""
    global _configured

    app_logger = logging.getLogger(APP_LOGGER)
    app_logger.setLevel(level if level is not None else resolve_level())

    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        app_logger.addHandler(handler)
        app_logger.propagate = False
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        _configured = True

    return app_logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``imagelab`` hierarchy for module ``name``."""
    configure_logging()
    if name != APP_LOGGER and not name.startswith(f"{APP_LOGGER}."):
        name = f"{APP_LOGGER}.{name}"
    return logging.getLogger(name)
