"""
Error message sanitization utility.

Error details returned to clients go through here first so Feishu tokens,
app secrets, file paths and stack traces never leak into API responses.
"""

from __future__ import annotations

import re

from imagelab.observability.logging import get_logger

logger = get_logger(__name__)

# Patterns that might leak sensitive information
SENSITIVE_PATTERNS = [
    # File paths
    r"/[^\s]+\.py",
    r"[A-Za-z]:\\[^\s]+",
    r"/(?:root|home|tmp|var|usr)/[^\s]+",
    # Stack trace indicators
    r"Traceback \(most recent call last\)",
    r"File \".*\"",
    # Credentials
    r"Bearer [A-Za-z0-9._-]+",
    r"tenant_access_token",
    r"app_secret",
    r"api[_-]?key=[^\s&]+",
    r"[A-Za-z0-9_-]{40,}",  # Long alphanumeric strings that might be keys
    # Internal module names
    r"imagelab\.[a-z_.]+",
]

GENERIC_MESSAGES = {
    400: "Invalid request. Please check your input and try again.",
    401: "Authentication required.",
    403: "Access denied.",
    404: "Resource not found.",
    422: "Invalid data format.",
    429: "Too many requests. Please try again later.",
    500: "An internal error occurred. Please try again later.",
    503: "Service temporarily unavailable.",
}


def sanitize_error_message(message: str, status_code: int = 500, max_length: int = 300) -> str:
    """
    Sanitize an error message to prevent information leakage.

    Args:
        message: The original error message
        status_code: HTTP status code (used to select generic fallback)
        max_length: Longer messages are replaced by the generic one

    Returns:
        Sanitized error message safe for client consumption
    """
    if not message:
        return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    for pattern in SENSITIVE_PATTERNS:
        if re.search(pattern, message, re.IGNORECASE):
            logger.warning("Sanitized sensitive error pattern: %s", pattern)
            return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    if len(message) > max_length or "\n" in message:
        return GENERIC_MESSAGES.get(status_code, "An error occurred.")

    return message


def get_safe_error_detail(error: Exception, status_code: int = 500) -> str:
    """Log the full error and return a client-safe detail string."""
    logger.error("Error (status=%d): %s - %s", status_code, type(error).__name__, str(error))
    return sanitize_error_message(str(error), status_code)
