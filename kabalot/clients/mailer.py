"""SMTP client for result notification e-mails."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Sequence

from kabalot.core.config import MailSettings

logger = logging.getLogger(__name__)


class SmtpMailer:
    """Send HTML messages through the configured SMTP relay."""

    def __init__(self, settings: MailSettings) -> None:
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return self._settings.is_configured

    def build_message(
        self,
        to: str,
        subject: str,
        html: str,
        attachments: Sequence[Path] = (),
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._settings.username or ""
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")
        for path in attachments:
            content_type, _ = mimetypes.guess_type(path.name)
            maintype, _, subtype = (content_type or "application/octet-stream").partition("/")
            message.add_attachment(
                path.read_bytes(), maintype=maintype, subtype=subtype, filename=path.name
            )
        return message

    def send_sync(
        self,
        to: str,
        subject: str,
        html: str,
        attachments: Sequence[Path] = (),
    ) -> None:
        settings = self._settings
        message = self.build_message(to, subject, html, attachments)
        with smtplib.SMTP(settings.host, settings.port, timeout=30) as smtp:
            smtp.ehlo()
            if settings.starttls:
                smtp.starttls()
            if settings.username and settings.password:
                smtp.login(settings.username, settings.password)
            smtp.send_message(message)
        logger.info("Email sent to %s", to)

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachments: Sequence[Path] = (),
    ) -> None:
        await asyncio.to_thread(self.send_sync, to, subject, html, attachments)


__all__ = ["SmtpMailer"]
