from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..messaging.webpush import PushResult
from ..models import DELIVERY_FAILED, DELIVERY_SUCCESS, PushEndpoint
from ..store import Store
from .dates import utcnow
from .payloads import PushPayload

log = logging.getLogger(__name__)

# Status codes meaning the endpoint will never accept a message again
PERMANENT_FAILURE_CODES = {401, 404, 410}
MAX_CONSECUTIVE_FAILURES = 5


@dataclass
class PushFanoutResult:
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.sent > 0

    def dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "errors": list(self.errors)}


class PushHealthTracker:
    """Fans push sends out to a user's endpoints and keeps per-endpoint health."""

    def __init__(self, store: Store, sender, timeout: float = 10):
        self.store = store
        self.sender = sender
        self.timeout = timeout

    # ==================== Registration ====================

    def register_endpoint(
        self,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_id: int | None = None,
        device_type: str = "desktop",
        now: datetime | None = None,
    ) -> int:
        """Upsert by endpoint URL; re-registering reactivates and resets counters."""
        endpoint_id = self.store.upsert_push_endpoint(endpoint, p256dh, auth, user_id, device_type, now or utcnow())
        log.info(f"[Push] Registered endpoint {endpoint_id} for user {user_id}")
        return endpoint_id

    def unregister_endpoint(self, endpoint: str, user_id: int | None = None) -> bool:
        deleted = self.store.delete_push_endpoint(endpoint, user_id)
        if deleted:
            log.info(f"[Push] Unregistered endpoint for user {user_id}")
        return deleted > 0

    # ==================== Health bookkeeping ====================

    def record_success(self, endpoint_id: int, now: datetime | None = None) -> None:
        self.store.update_push_endpoint(
            endpoint_id,
            consecutive_failures=0,
            last_delivery_status=DELIVERY_SUCCESS,
            last_failure_reason=None,
            last_used=now or utcnow(),
        )

    def record_failure(self, endpoint_id: int, status: int, detail: str) -> bool:
        """Record one failed send. Returns True when the endpoint got deactivated."""
        reason = f"HTTP {status}: {detail}" if status else detail

        if status in PERMANENT_FAILURE_CODES:
            self.store.update_push_endpoint(
                endpoint_id,
                is_active=False,
                last_delivery_status=DELIVERY_FAILED,
                last_failure_reason=f"Permanent failure, {reason}",
            )
            log.warning(f"[Push] Endpoint {endpoint_id} deactivated after permanent failure ({status})")
            return True

        failures = self.store.increment_push_failures(endpoint_id)
        if failures >= MAX_CONSECUTIVE_FAILURES:
            self.store.update_push_endpoint(
                endpoint_id,
                is_active=False,
                last_delivery_status=DELIVERY_FAILED,
                last_failure_reason=f"Auto-disabled after {failures} consecutive failures, last: {reason}",
            )
            log.warning(f"[Push] Endpoint {endpoint_id} auto-disabled after {failures} consecutive failures")
            return True

        self.store.update_push_endpoint(
            endpoint_id,
            last_delivery_status=DELIVERY_FAILED,
            last_failure_reason=reason,
        )
        log.info(f"[Push] Endpoint {endpoint_id} failure {failures}/{MAX_CONSECUTIVE_FAILURES}: {reason}")
        return False

    # ==================== Sending ====================

    async def _send_one(self, endpoint: PushEndpoint, encoded: str) -> PushResult:
        try:
            return await asyncio.wait_for(self.sender.send(endpoint.subscription_info(), encoded), timeout=self.timeout)
        except asyncio.TimeoutError:
            return PushResult(ok=False, status=0, detail=f"timeout after {self.timeout}s")

    async def send_to_user(self, user_id: int, payload: PushPayload) -> PushFanoutResult:
        """Send to every active endpoint of the user concurrently."""
        result = PushFanoutResult()
        endpoints = self.store.active_push_endpoints(user_id)
        if not endpoints:
            result.errors.append("no active push endpoints")
            return result

        encoded = payload.to_json()
        outcomes = await asyncio.gather(
            *(self._send_one(ep, encoded) for ep in endpoints),
            return_exceptions=True,
        )

        now = utcnow()
        for ep, outcome in zip(endpoints, outcomes):
            if isinstance(outcome, BaseException):
                outcome = PushResult(ok=False, status=0, detail=f"{type(outcome).__name__}: {outcome}")

            if outcome.ok:
                result.sent += 1
                self.record_success(ep.id, now)
                self.store.log_notification(user_id, "push", payload.title, "sent", now, push_subscription_id=ep.id)
            else:
                result.failed += 1
                result.errors.append(f"endpoint {ep.id}: {outcome.status or 'error'} {outcome.detail}")
                self.record_failure(ep.id, outcome.status, outcome.detail)
                self.store.log_notification(
                    user_id, "push", payload.title, "failed", now,
                    push_subscription_id=ep.id, error_message=outcome.detail,
                )

        log.info(f"[Push] User {user_id}: {result.sent} sent, {result.failed} failed of {len(endpoints)} endpoint(s)")
        return result
