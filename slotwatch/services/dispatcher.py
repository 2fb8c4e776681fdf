from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..models import METHOD_BOTH, METHOD_EMAIL, METHOD_PUSH
from ..store import Store
from .dates import utcnow
from .payloads import EmailMessage, PushPayload
from .push_health import PushHealthTracker

log = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    success: bool = False
    email_sent: bool = False
    push_sent: bool = False
    email_error: str | None = None
    push_error: str | None = None

    @property
    def error_message(self) -> str | None:
        """Which channel(s) failed and why, for the queue item."""
        parts = []
        if self.email_error:
            parts.append(f"email: {self.email_error}")
        if self.push_error:
            parts.append(f"push: {self.push_error}")
        return "; ".join(parts) or None

    def dict(self) -> dict:
        return {
            "success": self.success,
            "emailSent": self.email_sent,
            "pushSent": self.push_sent,
            "emailError": self.email_error,
            "pushError": self.push_error,
        }


class ChannelDispatcher:
    """Deliver one notification through the user's configured channel(s).

    Channels fail independently; nothing here raises to the caller.
    """

    def __init__(self, store: Store, email_sender, push_tracker: PushHealthTracker, email_timeout: float = 8):
        self.store = store
        self.email_sender = email_sender
        self.push_tracker = push_tracker
        self.email_timeout = email_timeout

    async def _send_email(self, user_id: int, email: EmailMessage | None) -> tuple[bool, str | None]:
        if email is None or not email.to:
            return False, "no email address"
        try:
            ok = await asyncio.wait_for(
                self.email_sender.send(email.to, email.subject, html_body=email.html, text_body=email.text),
                timeout=self.email_timeout,
            )
            error = None if ok else "email transport reported failure"
        except asyncio.TimeoutError:
            ok, error = False, f"timeout after {self.email_timeout}s"
        except Exception as e:
            log.warning(f"[Dispatch] Email to user {user_id} raised: {e}")
            ok, error = False, str(e)

        self.store.log_notification(
            user_id, "email", email.subject, "sent" if ok else "failed", utcnow(), error_message=error
        )
        return ok, error

    async def _send_push(self, user_id: int, push: PushPayload | None) -> tuple[bool, str | None]:
        if push is None:
            return False, "no push payload"
        try:
            fanout = await self.push_tracker.send_to_user(user_id, push)
        except Exception as e:
            log.warning(f"[Dispatch] Push to user {user_id} raised: {e}")
            return False, str(e)
        if fanout.success:
            return True, None
        return False, "; ".join(fanout.errors) or "no endpoint reached"

    async def send(
        self,
        user_id: int,
        method: str,
        email: EmailMessage | None = None,
        push: PushPayload | None = None,
    ) -> DispatchResult:
        result = DispatchResult()

        if method == METHOD_EMAIL:
            result.email_sent, result.email_error = await self._send_email(user_id, email)
            result.success = result.email_sent
        elif method == METHOD_PUSH:
            result.push_sent, result.push_error = await self._send_push(user_id, push)
            result.success = result.push_sent
        elif method == METHOD_BOTH:
            (result.email_sent, result.email_error), (result.push_sent, result.push_error) = await asyncio.gather(
                self._send_email(user_id, email),
                self._send_push(user_id, push),
            )
            result.success = result.email_sent or result.push_sent
            if result.email_sent and result.push_sent:
                log.info(f"[Dispatch] User {user_id}: delivered via email and push")
            elif result.success:
                log.info(
                    f"[Dispatch] User {user_id}: partial delivery "
                    f"(email={result.email_sent}, push={result.push_sent}), {result.error_message}"
                )
        else:
            result.email_error = result.push_error = f"unknown method {method!r}"

        if not result.success:
            log.warning(f"[Dispatch] User {user_id}: delivery failed via {method}, {result.error_message}")
        return result
