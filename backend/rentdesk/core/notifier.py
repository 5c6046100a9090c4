# backend/rentdesk/core/notifier.py

## Outbound email for customer-facing messages such as pickup reminders.
# Uses aiosmtplib so sending never blocks the event loop; SMTP credentials
# come from the SMTP settings group.
from __future__ import annotations

import logging
from email.message import EmailMessage

import aiosmtplib

from rentdesk.core.config import settings

logger = logging.getLogger(__name__)

__all__ = ["send_email", "notify_user"]


async def send_email(to_email: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["From"] = settings.smtp.from_address
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    await aiosmtplib.send(
        msg,
        hostname=settings.smtp.host,
        port=settings.smtp.port,
        username=settings.smtp.username,
        password=settings.smtp.password,
        start_tls=True,
    )


async def notify_user(email: str | None, subject: str, body: str) -> bool:
    """Email a user when SMTP is configured; returns ``True`` when a mail went out."""

    if not email:
        return False
    if not settings.smtp.is_configured:
        logger.info("SMTP not configured; skipping email to %s: %s", email, subject)
        return False
    try:
        await send_email(email, subject, body)
    except aiosmtplib.SMTPException:
        logger.exception("Failed to send email to %s", email)
        return False
    return True
