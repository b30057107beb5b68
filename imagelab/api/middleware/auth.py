"""Authentication for imagelab admin endpoints"""

from __future__ import annotations

import os
import secrets

from fastapi import Header, HTTPException, status

from imagelab.config import ADMIN_API_KEY_ENV, is_production
from imagelab.observability.logging import get_logger

logger = get_logger(__name__)


class APIKeyAuth:
    """
    Bearer API key check for admin endpoints (e.g. local storage cleanup).

    The key comes from IMAGELAB_ADMIN_API_KEY.  Without a key, admin
    endpoints are open in development and closed in production.
    """

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key if api_key is not None else os.getenv(ADMIN_API_KEY_ENV)
        if not self.api_key:
            logger.warning("%s not set - admin endpoints are unprotected in development", ADMIN_API_KEY_ENV)

    def verify_api_key(self, authorization: str | None = Header(None)) -> bool:
        """
        Verify API key from Authorization header.

        Expected format: "Bearer {api_key}"
        """
        if not self.api_key:
            if is_production():
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Admin endpoints are disabled",
                )
            return True

        if not authorization:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authorization header",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            scheme, token = authorization.split()
            if scheme.lower() != "bearer":
                raise ValueError("Invalid authentication scheme")
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authorization header format. Expected: Bearer {api_key}",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

        # timing-safe comparison
        if not secrets.compare_digest(token, self.api_key):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid API key",
            )

        return True


# Global auth instance
auth = APIKeyAuth()


def require_admin_auth(authorization: str | None = Header(None)) -> bool:
    """
    Dependency for endpoints that require admin authentication.

    Usage:
        @router.post("/api/admin/cleanup")
        async def cleanup(authenticated: bool = Depends(require_admin_auth)):
            ...
    """
    return auth.verify_api_key(authorization)
