from __future__ import annotations

import asyncio
import logging
from typing import Any

from pywebpush import WebPushException, webpush

from ..config import Settings

log = logging.getLogger(__name__)


class PushResult:
    def __init__(self, ok: bool, status: int, detail: str = ""):
        self.ok = ok
        self.status = status
        self.detail = detail

    def dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "status": self.status, "detail": self.detail}


class DummyPush:
    async def send(self, subscription_info: dict[str, Any], payload: str) -> PushResult:
        log.info(f"[DUMMY PUSH] endpoint={subscription_info.get('endpoint')} payload={payload}")
        return PushResult(ok=True, status=201, detail="dummy")


class WebPushSender:
    """
    Web Push with VAPID.
    Requires:
      - VAPID_PRIVATE_KEY
      - VAPID_EMAIL (used as the mailto: subject claim)
    """

    def __init__(self, settings: Settings) -> None:
        self.private_key = settings.VAPID_PRIVATE_KEY
        self.claims = {"sub": f"mailto:{settings.VAPID_EMAIL}"}
        self.timeout = settings.PUSH_TIMEOUT_SECONDS
        if not self.private_key:
            log.warning("[Push] VAPID private key not configured, every send will fail")

    def _send_sync(self, subscription_info: dict[str, Any], payload: str):
        return webpush(
            subscription_info=subscription_info,
            data=payload,
            vapid_private_key=self.private_key,
            vapid_claims=dict(self.claims),
            timeout=self.timeout,
        )

    async def send(self, subscription_info: dict[str, Any], payload: str) -> PushResult:
        if not self.private_key:
            return PushResult(ok=False, status=0, detail="VAPID keys not configured")
        try:
            r = await asyncio.wait_for(
                asyncio.to_thread(self._send_sync, subscription_info, payload),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return PushResult(ok=False, status=0, detail=f"timeout after {self.timeout}s")
        except WebPushException as ex:
            # requests.Response is falsy for error statuses, compare with None
            status = ex.response.status_code if ex.response is not None else 0
            detail = ex.response.text if ex.response is not None and ex.response.text else str(ex)
            return PushResult(ok=False, status=status, detail=detail[:500])
        except Exception as e:
            log.warning(f"[Push] Transport error: {e}")
            return PushResult(ok=False, status=0, detail=str(e)[:500])

        status = getattr(r, "status_code", 201)
        return PushResult(ok=200 <= status < 300, status=status, detail="success")


def get_push_sender(settings: Settings):
    if settings.PUSH_BACKEND.lower() == "webpush":
        return WebPushSender(settings)
    return DummyPush()
