"""Webhook middleware -- FastAPI dependencies for the event feed.

The directory service signs each notification body with HMAC-SHA256 using a
shared secret. When ``DIRSYNC_WEBHOOK_SECRET`` is unset, signatures are not
checked (local development).

Accepted header forms:
1. ``X-Signature: <hex digest>``
2. ``X-Signature: sha256=<hex digest>``
"""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from dirsync.engine import SyncEngine

SECRET_ENV = "DIRSYNC_WEBHOOK_SECRET"


def sign(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``body``."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def verify_signature(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
) -> None:
    """FastAPI dependency that rejects unsigned or mis-signed notifications."""
    secret = os.environ.get(SECRET_ENV, "")
    if not secret:
        return

    if not x_signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature")

    _, _, digest = x_signature.rpartition("=")
    expected = sign(await request.body(), secret)
    if not hmac.compare_digest(digest.strip().lower(), expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


def get_engine(request: Request) -> SyncEngine:
    """Return the engine attached to the application."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine not running")
    return engine
