from __future__ import annotations

from typing import Any

import pytest

from sf_monitoring.config import MonitoringConfig
from sf_monitoring.errors import RemoteQueryError, TransientRemoteError
from sf_monitoring.models import ErrorSnapshot, LimitSnapshot, QualitySnapshot
from sf_monitoring.monitors import CodeQualityMonitor, DebugLogMonitor, GovernorLimitMonitor
from sf_monitoring.monitors.code_quality import compute_complexity, count_decision_points, coverage_percent
from sf_monitoring.monitors.debug_logs import map_error_record
from sf_monitoring.monitors.governor_limits import build_limit_record, parse_limit_usage
from sf_monitoring.retry import RetryExecutor


async def _no_sleep(delay: float) -> None:
    return None


def _executor() -> RetryExecutor:
    return RetryExecutor(max_attempts=3, initial_delay=0.0, retry_on=(TransientRemoteError,), sleep=_no_sleep)


class FakeConnection:
    """Answers queries by matching the FROM object; records every call."""

    def __init__(
        self,
        tables: dict[str, list[dict[str, Any]]] | None = None,
        failures: dict[str, Exception] | None = None,
        bodies: dict[str, str] | None = None,
    ) -> None:
        self.tables = tables or {}
        self.failures = failures or {}
        self.bodies = bodies or {}
        self.calls: list[tuple[str, str]] = []

    def _answer(self, kind: str, soql: str) -> list[dict[str, Any]]:
        self.calls.append((kind, " ".join(soql.split())))
        for key, error in self.failures.items():
            if key in soql:
                raise error
        for key, rows in self.tables.items():
            if f"FROM {key}" in soql:
                return rows
        return []

    async def query(self, soql: str) -> list[dict[str, Any]]:
        return self._answer("query", soql)

    async def tooling_query(self, soql: str) -> list[dict[str, Any]]:
        return self._answer("tooling", soql)

    async def get_text(self, path: str) -> str:
        self.calls.append(("text", path))
        if path in self.bodies:
            return self.bodies[path]
        raise RemoteQueryError("NOT_FOUND", 404)


_APEX_LOG_ERRORS = [
    {
        "Id": "07L000000000001",
        "StartTime": "2024-05-01T10:00:00.000+0000",
        "Status": "System.NullPointerException",
        "Operation": "/apex/AccountPage",
        "Location": "AccountController",
        "DurationMilliseconds": 120,
    },
    {
        "Id": "07L000000000002",
        "StartTime": "2024-05-01T10:05:00.000+0000",
        "Status": None,
        "Operation": None,
        "Location": None,
    },
]


def test_map_error_record_defaults() -> None:
    first = map_error_record(_APEX_LOG_ERRORS[0])
    second = map_error_record(_APEX_LOG_ERRORS[1])

    assert first.error_type == "System.NullPointerException"
    assert first.class_name == "AccountController"
    assert first.error_message == "/apex/AccountPage"
    assert first.method_name is None and first.line_number is None
    assert second.error_type == "Unknown"
    assert second.class_name == "Unknown"
    assert second.error_message == ""


@pytest.mark.asyncio
async def test_debug_log_monitor_collects_failed_executions() -> None:
    conn = FakeConnection(tables={
        "EventLogFile": [{"Id": "0AT1", "EventType": "ApexUnexpectedException"}],
        "ApexLog": _APEX_LOG_ERRORS,
    })
    monitor = DebugLogMonitor(MonitoringConfig(), _executor())

    snapshot = await monitor.monitor(conn)

    assert isinstance(snapshot, ErrorSnapshot)
    assert snapshot.summary.total_count == 2
    assert snapshot.summary.error_types == {"System.NullPointerException": 1, "Unknown": 1}
    assert [kind for kind, _ in conn.calls] == ["query", "tooling"]
    assert "Status != 'Success'" in conn.calls[1][1]
    assert "LIMIT 100" in conn.calls[1][1]


@pytest.mark.asyncio
async def test_debug_log_monitor_without_event_files_skips_apex_log() -> None:
    conn = FakeConnection(tables={"ApexLog": _APEX_LOG_ERRORS})
    monitor = DebugLogMonitor(MonitoringConfig(), _executor())

    snapshot = await monitor.monitor(conn)

    assert snapshot.errors == []
    assert snapshot.summary.total_count == 0
    assert len(conn.calls) == 1


@pytest.mark.asyncio
async def test_monitor_failure_is_absorbed_into_empty_snapshot() -> None:
    conn = FakeConnection(failures={"EventLogFile": RemoteQueryError("INVALID_TYPE", 400)})
    monitor = DebugLogMonitor(MonitoringConfig(), _executor())

    snapshot = await monitor.monitor(conn)

    assert snapshot == ErrorSnapshot.empty()
    assert len(conn.calls) == 1


@pytest.mark.asyncio
async def test_monitor_retries_transient_query_errors() -> None:
    class Flaky(FakeConnection):
        attempts = 0

        async def tooling_query(self, soql: str) -> list[dict[str, Any]]:
            type(self).attempts += 1
            if type(self).attempts < 3:
                raise TransientRemoteError("Service Unavailable", 503)
            return await super().tooling_query(soql)

    conn = Flaky(tables={"ApexLog": [{"Id": "07L1", "Location": "Svc", "DurationMilliseconds": 9500}]})
    snapshot = await GovernorLimitMonitor(MonitoringConfig(), _executor()).monitor(conn)

    assert Flaky.attempts == 3
    assert len(snapshot.records) == 1


def test_parse_limit_usage_keeps_highest_block() -> None:
    body = """
    LIMIT_USAGE_FOR_NS|(default)|
      Number of SOQL queries: 12 out of 100
      Number of DML statements: 3 out of 150
      Maximum CPU time: 4100 out of 10000
      Maximum heap size: 2048 out of 6000000
    LIMIT_USAGE_FOR_NS|(default)|
      Number of SOQL queries: 97 out of 100
      Number of DML statements: 1 out of 150
    """

    usage = parse_limit_usage(body)

    assert usage == {
        "soql_queries": (97, 100),
        "dml_statements": (3, 150),
        "cpu_time": (4100, 10000),
        "heap_size": (2048, 6000000),
    }
    assert parse_limit_usage("") == {}


def test_build_limit_record_without_body_uses_duration_for_cpu() -> None:
    record = build_limit_record({"Location": "BatchJob", "Operation": "execute", "DurationMilliseconds": 8500})

    assert record.cpu_time_used == 8500
    assert record.soql_queries_used is None
    assert record.soql_queries_limit == 100
    assert record.percentages() == {"cpu_time": 85.0}


@pytest.mark.asyncio
async def test_governor_limit_monitor_reads_log_bodies_when_enabled() -> None:
    config = MonitoringConfig(monitoring={"governor_limits": {"fetch_log_bodies": True, "max_logs": 50}})
    conn = FakeConnection(
        tables={"ApexLog": [
            {"Id": "07L1", "Location": "OrderService", "Operation": "run", "DurationMilliseconds": 100},
            {"Id": "07L2", "Location": "OrderService", "Operation": "run", "DurationMilliseconds": 300},
        ]},
        bodies={"tooling/sobjects/ApexLog/07L1/Body": "Number of SOQL queries: 90 out of 100\n"},
    )

    snapshot = await GovernorLimitMonitor(config, _executor()).monitor(conn)

    assert isinstance(snapshot, LimitSnapshot)
    first, second = snapshot.records
    assert first.soql_queries_used == 90
    assert first.cpu_time_used == 100
    # Body fetch failed: duration only.
    assert second.soql_queries_used is None
    assert second.cpu_time_used == 300
    assert snapshot.by_class["OrderService"].count == 2
    assert "LIMIT 50" in conn.calls[0][1]


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("public void run() { if (a && b) { for (X x : xs) {} } }", 3),
        ("Integer v = ok ? 1 : 2; String s = name ?? 'x';", 2),
        ("// if while for\nString s = 'if (a || b)'; /* catch when */", 0),
        ("switch on v { when 1 {} when else {} } try {} catch (Exception e) {}", 3),
        ("Account a = acc?.Parent;", 0),
    ],
)
def test_count_decision_points(source: str, expected: int) -> None:
    assert count_decision_points(source) == expected


def test_compute_complexity() -> None:
    body = "public class A { void a() { if (x) {} } void b() { while (y) {} if (z) {} } }"

    assert compute_complexity(body, 2) == 3
    assert compute_complexity(body, 0) == 4
    assert compute_complexity("(hidden)", 5) is None
    assert compute_complexity(None, 1) is None
    assert compute_complexity("public class Empty {}", 1) == 1


def test_coverage_percent() -> None:
    assert coverage_percent(75, 25) == 75.0
    assert coverage_percent(2, 1) == 66.7
    assert coverage_percent(0, 0) is None
    assert coverage_percent(None, None) is None


@pytest.mark.asyncio
async def test_code_quality_monitor_combines_length_complexity_and_coverage() -> None:
    conn = FakeConnection(tables={
        "ApexClass": [
            {"Id": "01p1", "Name": "Big", "LengthWithoutComments": 1500, "ApiVersion": 59.0,
             "Body": "class Big { void a() { if (x) {} if (y) {} } }"},
            {"Id": "01p2", "Name": "Managed", "LengthWithoutComments": 10, "ApiVersion": 58.0, "Body": "(hidden)"},
        ],
        "ApexCodeCoverageAggregate": [
            {"ApexClassOrTriggerId": "01p1", "NumLinesCovered": 40, "NumLinesUncovered": 60},
        ],
    })

    snapshot = await CodeQualityMonitor(MonitoringConfig(), _executor()).monitor(conn)

    assert isinstance(snapshot, QualitySnapshot)
    big, managed = snapshot.classes
    assert big.name == "Big"
    assert big.length == 1500
    assert big.api_version == "59.0"
    assert big.test_coverage == 40.0
    # No SymbolTable in the fake rows, so all decision points land on one method.
    assert big.complexity == 3
    assert managed.complexity is None
    assert managed.test_coverage is None


@pytest.mark.asyncio
async def test_code_quality_monitor_tolerates_missing_coverage() -> None:
    conn = FakeConnection(
        tables={"ApexClass": [{"Id": "01p1", "Name": "A", "LengthWithoutComments": 5, "Body": "class A {}"}]},
        failures={"ApexCodeCoverageAggregate": RemoteQueryError("INVALID_TYPE", 400)},
    )

    snapshot = await CodeQualityMonitor(MonitoringConfig(), _executor()).monitor(conn)

    assert len(snapshot.classes) == 1
    assert snapshot.classes[0].test_coverage is None
