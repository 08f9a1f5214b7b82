"""
Transactional email delivery through Resend.
"""

import html
import logging
from dataclasses import dataclass
from typing import Any

import resend

from palette.config import Config
from palette.security.unsubscribe_tokens import build_unsubscribe_url

logger = logging.getLogger(__name__)

MESSAGE_WELCOME = "welcome"
MESSAGE_ENGAGEMENT = "engagement"
MESSAGE_CONVERSION = "conversion"
MESSAGE_TYPES = (MESSAGE_WELCOME, MESSAGE_ENGAGEMENT, MESSAGE_CONVERSION)

DEFAULT_DISCOUNT_CODE = "WELCOME50"

SUBJECTS = {
    MESSAGE_WELCOME: "Welcome to Palette! Your creative journey starts now",
    MESSAGE_ENGAGEMENT: "Your visual is waiting for you",
    MESSAGE_CONVERSION: "Unlock unlimited creations - 50% off Pro",
}


@dataclass
class SendResult:
    success: bool
    error: str | None = None
    message_id: str | None = None


def render_email(
    message_type: str, user_name: str | None, unsubscribe_url: str, metadata: dict[str, Any]
) -> tuple[str, str]:
    """Subject and HTML body for a message type."""
    if message_type not in SUBJECTS:
        raise ValueError(f"Unknown email type: {message_type}")

    name = html.escape(user_name or "there")
    if message_type == MESSAGE_WELCOME:
        body = (
            f"<p>Hi {name},</p>"
            "<p>Your brand kit is ready. Create your first visual in a few seconds.</p>"
        )
    elif message_type == MESSAGE_ENGAGEMENT:
        brand = html.escape(metadata.get("brand_name") or "your brand")
        link = metadata.get("generation_url") or Config.FRONTEND_URL
        body = (
            f"<p>Hi {name},</p>"
            f'<p>A new visual for {brand} is waiting: <a href="{html.escape(link)}">open it</a>.</p>'
        )
    else:
        code = html.escape(metadata.get("discount_code") or DEFAULT_DISCOUNT_CODE)
        body = (
            f"<p>Hi {name},</p>"
            f"<p>Use code <strong>{code}</strong> for 50% off your first month of Pro.</p>"
        )

    body += f'<p style="font-size:12px"><a href="{html.escape(unsubscribe_url)}">Unsubscribe</a></p>'
    return SUBJECTS[message_type], body


class ResendEmailSender:
    """Sends one rendered message per call; failures are reported, not raised."""

    def __init__(self, api_key: str | None = None, sender: str | None = None):
        self.api_key = api_key if api_key is not None else Config.RESEND_API_KEY
        self.sender = sender or Config.EMAIL_FROM

    def send(
        self,
        to: str,
        message_type: str,
        user_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SendResult:
        if not self.api_key:
            return SendResult(success=False, error="RESEND_API_KEY is not configured")

        try:
            subject, body = render_email(
                message_type, user_name, build_unsubscribe_url(to), metadata or {}
            )
            resend.api_key = self.api_key
            response = resend.Emails.send(
                {"from": self.sender, "to": [to], "subject": subject, "html": body}
            )
            message_id = response.get("id") if response else None
        except Exception as e:
            logger.error(f"Error sending {message_type} email to {to}: {e}")
            return SendResult(success=False, error=str(e))

        logger.info(f"Sent {message_type} email to {to}, id: {message_id}")
        return SendResult(success=True, message_id=message_id)


_email_sender: ResendEmailSender | None = None


def get_email_sender() -> ResendEmailSender:
    global _email_sender
    if _email_sender is None:
        _email_sender = ResendEmailSender()
    return _email_sender
