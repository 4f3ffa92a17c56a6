"""SMTP mailer for plain-text e-mails."""

from __future__ import annotations

import asyncio
import smtplib
from email.mime.text import MIMEText

import structlog

from shared.config import Settings

logger = structlog.get_logger()


class Mailer:
    """Sends one plain-text e-mail per call.

    The SMTP client blocks, so every send runs in the default executor.
    Without ``smtp_host`` messages are logged and dropped.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self._settings.smtp_host)

    async def send(self, to: str, subject: str, body: str) -> bool:
        if not self.enabled:
            logger.debug("email_disabled", to=to, subject=subject)
            return False

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_smtp, to, subject, body)
        logger.info("email_sent", to=to, subject=subject)
        return True

    def _send_smtp(self, to: str, subject: str, body: str) -> None:
        settings = self._settings
        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = settings.app_email
        msg["To"] = to
        msg["Subject"] = subject

        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.http_timeout_seconds) as server:
            if settings.smtp_starttls:
                server.starttls()
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(msg)
