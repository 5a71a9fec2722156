from __future__ import annotations

from sf_monitoring.models import (
    ErrorRecord,
    ErrorSummary,
    LimitSnapshot,
    LimitUsageRecord,
    RunStatus,
    Severity,
)


def _error(error_type: str, class_name: str = "Svc") -> ErrorRecord:
    return ErrorRecord(
        timestamp="2024-05-01T10:00:00.000+0000",
        log_id="07L000001",
        error_type=error_type,
        error_message="",
        class_name=class_name,
    )


def test_error_summary_counts_and_tie_break() -> None:
    summary = ErrorSummary.from_errors([
        _error("System.NullPointerException", "A"),
        _error("System.DmlException", "B"),
        _error("System.NullPointerException", "A"),
        _error("System.DmlException", "A"),
        _error("System.LimitException", ""),
    ])

    assert summary.total_count == 5
    assert summary.unique_error_type_count == 3
    assert summary.class_errors == {"A": 3, "B": 1}
    # Equal counts resolve alphabetically.
    assert summary.most_common_error == "System.DmlException"


def test_empty_error_summary() -> None:
    summary = ErrorSummary.from_errors([])

    assert summary.total_count == 0
    assert summary.most_common_error is None
    assert summary.to_dict()["unique_error_types"] == 0


def test_limit_percentages_skip_unknown_values() -> None:
    record = LimitUsageRecord(
        timestamp="t",
        class_name="Svc",
        method_name="run",
        soql_queries_used=50,
        cpu_time_used=2500,
    )

    assert record.percentages() == {"soql_queries": 50.0, "cpu_time": 25.0}
    assert record.max_percent_used == 50.0
    assert LimitUsageRecord(timestamp="t", class_name="Svc", method_name="run").max_percent_used == 0.0


def test_limit_snapshot_groups_by_class() -> None:
    snapshot = LimitSnapshot.from_records([
        LimitUsageRecord(timestamp="t", class_name="A", method_name="x", soql_queries_used=10, cpu_time_used=100),
        LimitUsageRecord(timestamp="t", class_name="A", method_name="y", soql_queries_used=21),
        LimitUsageRecord(timestamp="t", class_name="B", method_name="z", dml_statements_used=3),
    ])

    a = snapshot.by_class["A"]
    assert a.count == 2
    assert a.avg_soql == 15.5
    assert a.avg_cpu == 100.0
    assert a.avg_dml is None
    assert snapshot.by_class["B"].avg_dml == 3.0


def test_severity_ordering_and_run_status() -> None:
    assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
    assert max([Severity.HIGH, Severity.CRITICAL, Severity.LOW]) is Severity.CRITICAL
    assert not RunStatus.RUNNING.terminal
    assert RunStatus.COMPLETED.terminal and RunStatus.FAILED.terminal
