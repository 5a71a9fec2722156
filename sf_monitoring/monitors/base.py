"""Common behaviour of the three monitors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, TypeVar

import structlog

from ..auth.salesforce_auth import Connection
from ..config import MonitoringConfig
from ..errors import MonitorFailure, TransientRemoteError
from ..models import ErrorSnapshot, LimitSnapshot, QualitySnapshot
from ..retry import RetryExecutor

logger = structlog.get_logger(__name__)

S = TypeVar("S", ErrorSnapshot, LimitSnapshot, QualitySnapshot)


def soql_datetime(value: datetime) -> str:
    """Format a datetime as a SOQL dateTime literal (UTC, no quotes)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Monitor(ABC, Generic[S]):
    """Reads one concern from the org and returns a typed snapshot.

    Collection failures never propagate: they are logged and the monitor
    returns an empty snapshot so the rest of the run can continue.
    """

    name: str = "monitor"

    def __init__(self, config: MonitoringConfig, retry_executor: RetryExecutor | None = None):
        self.config = config
        self.retry_executor = retry_executor or RetryExecutor(
            max_attempts=config.retry.max_attempts,
            initial_delay=config.retry.initial_delay_seconds,
            retry_on=(TransientRemoteError,),
        )

    def since(self, now: datetime | None = None) -> datetime:
        """Start of the lookback window."""
        now = now or datetime.now(timezone.utc)
        return now - timedelta(hours=self.config.monitoring.intervals.debug_log_hours)

    async def run_query(self, connection: Connection, soql: str, *, tooling: bool = False) -> list[dict[str, Any]]:
        """Run one query through the retry policy."""
        if tooling:
            return await self.retry_executor.execute(lambda: connection.tooling_query(soql), description=f"{self.name}_tooling_query")
        return await self.retry_executor.execute(lambda: connection.query(soql), description=f"{self.name}_query")

    @abstractmethod
    async def collect(self, connection: Connection) -> S:
        """Query the org and build the snapshot. May raise."""

    @abstractmethod
    def empty_snapshot(self) -> S:
        """Snapshot returned when collection fails."""

    async def monitor(self, connection: Connection) -> S:
        logger.info("Starting monitoring", monitor=self.name)
        try:
            snapshot = await self.collect(connection)
        except Exception as e:
            failure = MonitorFailure(self.name, e)
            logger.error("Monitoring failed, continuing with empty snapshot", **failure.to_dict())
            return self.empty_snapshot()
        return snapshot
