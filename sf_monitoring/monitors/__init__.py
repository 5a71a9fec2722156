"""Monitors that read one concern each from the org."""

from .base import Monitor
from .code_quality import CodeQualityMonitor
from .debug_logs import DebugLogMonitor
from .governor_limits import GovernorLimitMonitor

__all__ = ["Monitor", "DebugLogMonitor", "GovernorLimitMonitor", "CodeQualityMonitor"]
