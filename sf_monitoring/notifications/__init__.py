"""Notification channels for run results."""

from .notifier import Notifier, NotifierProtocol
from .report import ReportGenerator

__all__ = ["Notifier", "NotifierProtocol", "ReportGenerator"]
