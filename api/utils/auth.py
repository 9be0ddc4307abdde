"""Admin token check shared by the service endpoints."""

from __future__ import annotations

import os
import secrets

from fastapi import Header, HTTPException, status

from api.utils.logging import get_logger

logger = get_logger("auth")


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Reject the request unless ``X-Admin-Token`` matches ``ADMIN_TOKEN``.

    Without a configured token every admin route answers 500 instead of
    becoming public.
    """

    expected = os.getenv("ADMIN_TOKEN")
    if not expected:
        logger.error("ADMIN_TOKEN is not configured; refusing admin request")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="admin_token_missing")

    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        logger.warning("Admin authentication failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


__all__ = ["require_admin"]
