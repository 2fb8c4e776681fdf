from __future__ import annotations

import logging
import time

import jwt
from fastapi import HTTPException, Request, status

from ..config import get_settings

log = logging.getLogger(__name__)

SCHEDULER_SUBJECT = "scheduler"


def create_cron_token(secret: str, ttl_seconds: int = 300) -> str:
    """Token an external scheduler sends to trigger a job."""
    now = int(time.time())
    return jwt.encode({"sub": SCHEDULER_SUBJECT, "iat": now, "exp": now + ttl_seconds}, secret, algorithm="HS256")


def verify_cron_token(request: Request) -> str:
    """
    Bearer JWT check for job endpoints, HS256 with settings.CRON_SECRET.
    Expects 'sub' == "scheduler".
    """
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing bearer token")

    token = auth.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(token, get_settings().CRON_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token expired")
    except jwt.InvalidTokenError:
        log.warning("[Auth] Rejected job request with invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")

    if payload.get("sub") != SCHEDULER_SUBJECT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="token not issued for the scheduler")
    return payload["sub"]
