"""
Logging utilities for the API process and the token refresh engine.

Provides a consistent logging format and configuration.
"""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a sensible default format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    # httpx logs every request line at INFO, which includes token endpoint URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def sanitize_token(token: str | None) -> str:
    """Mask a token for log output, keeping the first and last four characters."""
    if not token or not isinstance(token, str):
        return "[invalid_token]"
    if len(token) <= 8:
        return "[short_token]"
    return f"{token[:4]}...{token[-4:]}"


__all__ = ["configure_logging", "sanitize_token"]
