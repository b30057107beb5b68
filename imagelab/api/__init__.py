"""HTTP API for imagelab"""

from __future__ import annotations


def main() -> None:
    """Run the API server (``imagelab-api`` console script)."""
    import uvicorn

    from imagelab.infrastructure.settings import API_HOST, API_PORT, LOG_LEVEL
    from imagelab.observability.logging import configure_logging, resolve_level

    configure_logging(resolve_level(LOG_LEVEL))
    uvicorn.run("imagelab.api.app:app", host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())
