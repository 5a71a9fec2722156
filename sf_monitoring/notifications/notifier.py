"""Best-effort delivery of run results to the configured channels."""

from __future__ import annotations

from typing import Protocol

import structlog

from ..config import NotificationsSection
from ..errors import NotificationFailure
from ..models import Anomaly, MonitoringResults
from .mailer import EmailChannel, build_subject
from .report import ReportGenerator
from .telegram import TelegramChannel, format_anomaly_message

logger = structlog.get_logger(__name__)


class NotifierProtocol(Protocol):
    async def notify(self, anomalies: list[Anomaly], results: MonitoringResults) -> None: ...


class Notifier:
    """Writes reports and sends alerts. Never raises.

    Every channel is attempted independently; a failing channel is logged
    and does not stop the others.
    """

    def __init__(
        self,
        settings: NotificationsSection,
        report_generator: ReportGenerator | None = None,
        email_channel: EmailChannel | None = None,
        telegram_channel: TelegramChannel | None = None,
    ):
        self.settings = settings
        self.report_generator = report_generator or ReportGenerator(settings.reports)

        self.email_channel = email_channel
        if self.email_channel is None and settings.email.enabled:
            self.email_channel = EmailChannel(settings.email)
            if not self.email_channel.configured:
                logger.warning("Email notifications enabled but SMTP host or recipients missing")

        self.telegram_channel = telegram_channel
        if self.telegram_channel is None and settings.telegram.enabled:
            if settings.telegram.bot_token and settings.telegram.chat_id:
                self.telegram_channel = TelegramChannel(settings.telegram.bot_token, settings.telegram.chat_id)
            else:
                logger.warning("Telegram notifications enabled but bot token or chat id missing")

    async def notify(self, anomalies: list[Anomaly], results: MonitoringResults) -> None:
        if not anomalies and self.settings.email.on_anomaly_only:
            logger.info("No anomalies detected, skipping notification")
            return

        failures: list[NotificationFailure] = []

        if self.settings.reports.generate_html or self.settings.reports.generate_json:
            try:
                self.report_generator.save(anomalies, results)
            except Exception as e:
                failures.append(NotificationFailure("report", e))

        if self.email_channel is not None and self.email_channel.configured:
            try:
                html = self.report_generator.render_html(anomalies, results)
                await self.email_channel.send(build_subject(len(anomalies)), html)
            except Exception as e:
                failures.append(NotificationFailure("email", e))

        if self.telegram_channel is not None:
            try:
                await self.telegram_channel.send(format_anomaly_message(anomalies, results))
            except Exception as e:
                failures.append(NotificationFailure("telegram", e))

        for failure in failures:
            logger.error("Failed to send notification", **failure.to_dict())

        if not failures:
            logger.info("Notifications sent successfully", anomalies=len(anomalies))
