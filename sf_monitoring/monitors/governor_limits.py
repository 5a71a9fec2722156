"""Governor limit consumption of recent Apex executions."""

from __future__ import annotations

import re
from typing import Any

import structlog

from ..auth.salesforce_auth import Connection
from ..models import LimitSnapshot, LimitUsageRecord
from .base import Monitor, soql_datetime

logger = structlog.get_logger(__name__)

DEFAULT_LIMITS = {
    "soql_queries": 100,
    "dml_statements": 150,
    "cpu_time": 10_000,
    "heap_size": 6_000_000,
}

# Cumulative usage lines printed in LIMIT_USAGE_FOR_NS blocks.
LIMIT_LINE_PATTERNS = {
    "soql_queries": re.compile(r"Number of SOQL queries:\s*(\d+)\s+out of\s+(\d+)", re.IGNORECASE),
    "dml_statements": re.compile(r"Number of DML statements:\s*(\d+)\s+out of\s+(\d+)", re.IGNORECASE),
    "cpu_time": re.compile(r"Maximum CPU time:\s*(\d+)\s+out of\s+(\d+)", re.IGNORECASE),
    "heap_size": re.compile(r"Maximum heap size:\s*(\d+)\s+out of\s+(\d+)", re.IGNORECASE),
}


def parse_limit_usage(body: str) -> dict[str, tuple[int, int]]:
    """Extract (used, limit) per resource from a debug log body.

    A log can hold several usage blocks (one per namespace and per
    transaction boundary); the highest usage seen is kept.
    """
    usage: dict[str, tuple[int, int]] = {}
    for resource, pattern in LIMIT_LINE_PATTERNS.items():
        for match in pattern.finditer(body or ""):
            used, limit = int(match.group(1)), int(match.group(2))
            if resource not in usage or used > usage[resource][0]:
                usage[resource] = (used, limit)
    return usage


def build_limit_record(row: dict[str, Any], usage: dict[str, tuple[int, int]] | None = None) -> LimitUsageRecord:
    """Build a record from an ApexLog row and optionally parsed body usage.

    Without parsed usage only CPU time is known (from the log duration).
    """
    values: dict[str, Any] = {}
    for resource, default_limit in DEFAULT_LIMITS.items():
        used, limit = (usage or {}).get(resource, (None, default_limit))
        values[f"{resource}_used"] = used
        values[f"{resource}_limit"] = limit

    if values["cpu_time_used"] is None and row.get("DurationMilliseconds") is not None:
        values["cpu_time_used"] = int(row["DurationMilliseconds"])

    return LimitUsageRecord(
        timestamp=str(row.get("StartTime") or ""),
        class_name=row.get("Location") or "Unknown",
        method_name=row.get("Operation") or "",
        **values,
    )


class GovernorLimitMonitor(Monitor[LimitSnapshot]):
    """Collects per-execution limit usage from the lookback window."""

    name = "governor_limits"

    def empty_snapshot(self) -> LimitSnapshot:
        return LimitSnapshot.empty()

    async def collect(self, connection: Connection) -> LimitSnapshot:
        records = await self.extract_limit_data(connection)
        snapshot = LimitSnapshot.from_records(records)

        logger.info("Governor limit monitoring complete",
                    total_records=len(snapshot.records),
                    classes=len(snapshot.by_class))
        return snapshot

    async def extract_limit_data(self, connection: Connection) -> list[LimitUsageRecord]:
        settings = self.config.monitoring.governor_limits
        rows = await self.run_query(
            connection,
            f"""
            SELECT Id, Application, DurationMilliseconds, Location,
                   LogLength, Operation, StartTime
            FROM ApexLog
            WHERE StartTime >= {soql_datetime(self.since())}
            ORDER BY StartTime DESC
            LIMIT {settings.max_logs}
            """,
            tooling=True,
        )

        records = []
        for row in rows:
            usage = None
            if settings.fetch_log_bodies and row.get("Id"):
                usage = await self._fetch_usage(connection, str(row["Id"]))
            records.append(build_limit_record(row, usage))
        return records

    async def _fetch_usage(self, connection: Connection, log_id: str) -> dict[str, tuple[int, int]] | None:
        try:
            body = await self.retry_executor.execute(
                lambda: connection.get_text(f"tooling/sobjects/ApexLog/{log_id}/Body"),
                description="apex_log_body",
            )
        except Exception as e:
            logger.warning("Failed to fetch log body, using duration only", log_id=log_id, error=str(e))
            return None
        return parse_limit_usage(body)
