"""Failed Apex executions from the debug log tables."""

from __future__ import annotations

from typing import Any

import structlog

from ..auth.salesforce_auth import Connection
from ..models import ErrorRecord, ErrorSnapshot
from .base import Monitor, soql_datetime

logger = structlog.get_logger(__name__)

MAX_ERROR_LOGS = 100


def map_error_record(row: dict[str, Any]) -> ErrorRecord:
    """Map an ApexLog row to an ErrorRecord."""
    return ErrorRecord(
        timestamp=str(row.get("StartTime") or ""),
        log_id=str(row.get("Id") or ""),
        error_type=row.get("Status") or "Unknown",
        error_message=row.get("Operation") or "",
        class_name=row.get("Location") or "Unknown",
        method_name=None,
        line_number=None,
    )


class DebugLogMonitor(Monitor[ErrorSnapshot]):
    """Collects failed executions from the lookback window."""

    name = "debug_logs"

    def empty_snapshot(self) -> ErrorSnapshot:
        return ErrorSnapshot.empty()

    async def collect(self, connection: Connection) -> ErrorSnapshot:
        errors = await self.query_errors(connection)
        snapshot = ErrorSnapshot.from_errors(errors)

        logger.info("Debug log monitoring complete",
                    total_errors=snapshot.summary.total_count,
                    unique_error_types=snapshot.summary.unique_error_type_count,
                    most_common_error=snapshot.summary.most_common_error)
        return snapshot

    async def query_errors(self, connection: Connection) -> list[ErrorRecord]:
        since = self.since()
        since_str = soql_datetime(since)
        logger.info("Querying EventLogFile", since=since_str)

        # EventLogFile is day-granular, so the window starts at midnight.
        event_files = await self.run_query(
            connection,
            f"""
            SELECT Id, LogDate, EventType
            FROM EventLogFile
            WHERE EventType = 'ApexUnexpectedException'
            AND LogDate >= {since.strftime('%Y-%m-%d')}T00:00:00Z
            ORDER BY LogDate DESC
            LIMIT 1000
            """,
        )
        if not event_files:
            logger.info("No error log files found")
            return []
        logger.info("Found unexpected exception log files", count=len(event_files))

        rows = await self.run_query(
            connection,
            f"""
            SELECT Id, Application, DurationMilliseconds, Location,
                   LogLength, LogUserId, Operation, StartTime, Status
            FROM ApexLog
            WHERE StartTime >= {since_str}
            AND Status != 'Success'
            ORDER BY StartTime DESC
            LIMIT {MAX_ERROR_LOGS}
            """,
            tooling=True,
        )
        return [map_error_record(row) for row in rows]
