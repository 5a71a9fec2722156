"""SMTP delivery of the HTML report."""

import asyncio
import smtplib
from email.message import EmailMessage

import structlog

from ..config import EmailSettings

logger = structlog.get_logger(__name__)


def build_subject(anomaly_count: int) -> str:
    if anomaly_count > 0:
        return f"⚠️ Apex Monitoring Alert: {anomaly_count} anomaly(ies) detected"
    return "✅ Apex Monitoring Report: All Clear"


class EmailChannel:
    def __init__(self, settings: EmailSettings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.recipients)

    def build_message(self, subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.settings.sender or self.settings.smtp_user
        message["To"] = ", ".join(self.settings.recipients)
        message.set_content("This report is best viewed in an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as smtp:
            if self.settings.smtp_use_tls:
                smtp.starttls()
            if self.settings.smtp_user:
                smtp.login(self.settings.smtp_user, self.settings.smtp_password)
            smtp.send_message(message)

    async def send(self, subject: str, html: str) -> None:
        message = self.build_message(subject, html)
        await asyncio.to_thread(self._send_sync, message)
        logger.info("Email notification sent", to=self.settings.recipients)
