from __future__ import annotations

import asyncio
import html
import logging
import re
from pathlib import Path
from typing import Any, Dict, List

import resend

from ..config import Settings

log = logging.getLogger(__name__)

# Template directory
TEMPLATES_DIR = Path(__file__).parent / "emails"


def load_template(name: str) -> str:
    """Load HTML template from emails directory."""
    template_path = TEMPLATES_DIR / f"{name}.html"
    return template_path.read_text(encoding="utf-8")


def render_template(name: str, **kwargs) -> str:
    """Load and render HTML template with variables.

    Uses string replacement instead of .format() to avoid conflicts
    with CSS curly braces in the templates.
    """
    template = load_template(name)
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def html_to_text(html_body: str) -> str:
    """Derive the plain-text alternative of an HTML email."""
    text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html_body, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p\s*>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</h[1-6]\s*>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "• ", text, flags=re.IGNORECASE)
    text = re.sub(r"</li\s*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</tr\s*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class ResendEmail:
    """Send email via Resend."""

    def __init__(self, settings: Settings):
        self.api_key = settings.RESEND_API_KEY
        self.from_email = settings.RESEND_FROM_EMAIL
        if self.api_key:
            resend.api_key = self.api_key
        else:
            log.warning("Resend API key not configured")

    async def send(
        self,
        to_email: str | List[str],
        subject: str,
        html_body: str | None = None,
        text_body: str | None = None,
        reply_to: str | None = None,
    ) -> bool:
        """
        Send one email.

        Args:
            to_email: Email address(es) to send to
            subject: Email subject
            html_body: HTML content of email
            text_body: Plain text content of email
            reply_to: Reply-to email address

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.api_key:
            log.error("Resend not initialized")
            return False

        if not html_body and not text_body:
            log.error("Either html_body or text_body must be provided")
            return False

        if isinstance(to_email, str):
            to_email = [to_email]

        params: Dict[str, Any] = {
            "from": self.from_email,
            "to": to_email,
            "subject": subject,
        }
        if html_body:
            params["html"] = html_body
        if text_body:
            params["text"] = text_body
        if reply_to:
            params["reply_to"] = reply_to

        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            log.error(f"Resend error sending email to {', '.join(to_email)}: {e}")
            return False

        log.info(f"Email sent successfully to {', '.join(to_email)}, ID: {response.get('id')}")
        return True


class ConsoleEmail:
    """Development backend: log the email instead of sending it."""

    async def send(
        self,
        to_email: str | List[str],
        subject: str,
        html_body: str | None = None,
        text_body: str | None = None,
        reply_to: str | None = None,
    ) -> bool:
        recipients = to_email if isinstance(to_email, str) else ", ".join(to_email)
        log.info(f"[CONSOLE EMAIL] to={recipients} subject={subject!r}\n{text_body or html_body}")
        return True


def get_email_sender(settings: Settings):
    if settings.EMAIL_BACKEND.lower() == "resend":
        return ResendEmail(settings)
    return ConsoleEmail()
