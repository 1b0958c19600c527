"""Admin auth: bearer / X-Admin-Token check for the admin router."""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def _provided_token(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("X-Admin-Token", "")


def require_admin(request: Request) -> None:
    """Reject callers without the admin token. No token configured = dev mode."""
    token = request.app.state.settings.admin_token
    if not token:
        return

    provided = _provided_token(request)
    if not provided or not hmac.compare_digest(provided, token):
        logger.warning("Rejected admin request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")
