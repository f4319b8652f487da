"""HTTP helpers shared by the broker and provider token clients."""

from __future__ import annotations

import base64
from typing import Any, Optional

import httpx


def basic_auth_header(client_id: str, client_secret: str) -> str:
    """``Authorization`` header value for HTTP Basic client authentication."""
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def json_or_none(response: httpx.Response) -> Optional[Any]:
    """Decoded JSON body, or ``None`` when the body is not JSON."""
    try:
        return response.json()
    except ValueError:
        return None


def oauth_error_fields(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
    """
    Extract ``(error, error_description)`` from an OAuth error response.

    Token endpoints usually answer with RFC 6749 JSON bodies; some brokers
    answer with ``{"error": {"message": ...}}`` or plain text instead.
    """
    payload = json_or_none(response)
    if isinstance(payload, dict):
        error = payload.get("error")
        description = payload.get("error_description") or payload.get("message")
        if isinstance(error, dict):
            description = description or error.get("message")
            error = error.get("code")
        return (str(error) if error else None, str(description) if description else None)
    text = response.text.strip()
    return None, text[:500] or None


__all__ = ["basic_auth_header", "json_or_none", "oauth_error_fields"]
