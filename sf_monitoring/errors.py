"""Exception hierarchy for the monitoring agent.

Each failure class maps to one propagation rule in the run cycle:

- ``TransientRemoteError`` is retried by :mod:`sf_monitoring.retry`.
- ``ExhaustedRetries`` ends the operation that asked for the retry; during
  authentication it fails the whole run.
- ``MonitorFailure`` is absorbed by the monitor into an empty snapshot.
- ``PersistenceFailure`` fails the run.
- ``NotificationFailure`` is only logged.
"""

from typing import Any, Dict, Optional


class MonitoringError(Exception):
    """Base exception for all monitoring agent errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(MonitoringError):
    """Configuration could not be loaded or is invalid."""


class TransientRemoteError(MonitoringError):
    """Remote call failed in a way that is worth retrying (5xx, 429, network)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, context={"status_code": status_code})
        self.status_code = status_code


class RemoteQueryError(MonitoringError):
    """Remote call was rejected (4xx); retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, context={"status_code": status_code})
        self.status_code = status_code


class ExhaustedRetries(MonitoringError):
    """All attempts of a retried operation failed.

    The message is the last cause's message, unchanged.
    """

    def __init__(self, cause: BaseException, attempts: int):
        super().__init__(str(cause), context={"attempts": attempts, "cause_type": type(cause).__name__})
        self.cause = cause
        self.attempts = attempts


class NotAuthenticated(MonitoringError):
    """A connection was requested before authentication succeeded."""

    def __init__(self, message: str = "Not authenticated. Call authenticate() first."):
        super().__init__(message)


class MonitorFailure(MonitoringError):
    """A monitor could not collect its data."""

    def __init__(self, monitor: str, original_error: BaseException):
        super().__init__(
            f"{monitor} monitoring failed: {original_error}",
            context={"monitor": monitor, "original_error": str(original_error)},
        )
        self.monitor = monitor


class PersistenceFailure(MonitoringError):
    """The run store could not durably record data."""


class RunAlreadyFinished(PersistenceFailure):
    """A terminal status was written twice for the same run."""

    def __init__(self, run_id: int, status: str):
        super().__init__(
            f"Run {run_id} already finished with status {status}",
            context={"run_id": run_id, "status": status},
        )
        self.run_id = run_id
        self.status = status


class NotificationFailure(MonitoringError):
    """A notification channel failed to deliver."""

    def __init__(self, channel: str, original_error: BaseException):
        super().__init__(
            f"{channel} notification failed: {original_error}",
            context={"channel": channel, "original_error": str(original_error)},
        )
        self.channel = channel
