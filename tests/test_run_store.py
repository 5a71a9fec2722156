from __future__ import annotations

from pathlib import Path

import pytest

from sf_monitoring.errors import PersistenceFailure, RunAlreadyFinished
from sf_monitoring.models import (
    Anomaly,
    AnomalyType,
    ClassMetrics,
    ErrorRecord,
    LimitUsageRecord,
    RunStatus,
    Severity,
)
from sf_monitoring.storage import RunStore


def _error(log_id: str, line_number=None) -> ErrorRecord:
    return ErrorRecord(
        timestamp="2024-05-01T10:00:00.000+0000",
        log_id=log_id,
        error_type="System.DmlException",
        error_message="/services/data",
        class_name="LeadHandler",
        line_number=line_number,
    )


@pytest.fixture()
def store(tmp_path: Path):
    s = RunStore(str(tmp_path / "data" / "monitoring.db")).open()
    yield s
    s.close()


def test_run_lifecycle(store: RunStore) -> None:
    run_id = store.start_run()

    run = store.get_run(run_id)
    assert run is not None
    assert run.status is RunStatus.RUNNING
    assert run.duration_ms is None

    store.end_run(run_id, RunStatus.COMPLETED, 1234)

    run = store.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert run.duration_ms == 1234
    assert [r.id for r in store.list_runs()] == [run_id]


def test_end_run_only_once(store: RunStore) -> None:
    run_id = store.start_run()
    store.end_run(run_id, "failed", 10)

    with pytest.raises(RunAlreadyFinished):
        store.end_run(run_id, RunStatus.COMPLETED, 20)

    assert store.get_run(run_id).status is RunStatus.FAILED


def test_end_run_rejects_unknown_run_and_non_terminal_status(store: RunStore) -> None:
    with pytest.raises(PersistenceFailure):
        store.end_run(999, RunStatus.COMPLETED, 1)

    run_id = store.start_run()
    with pytest.raises(ValueError):
        store.end_run(run_id, RunStatus.RUNNING, 1)


def test_bulk_inserts_are_scoped_to_run(store: RunStore) -> None:
    run_id = store.start_run()

    assert store.insert_error_records(run_id, [_error("a"), _error("b")]) == 2
    assert store.insert_limit_records(run_id, [
        LimitUsageRecord(timestamp="t", class_name="Svc", method_name="run", cpu_time_used=500),
    ]) == 1
    assert store.insert_quality_metrics(run_id, [ClassMetrics(name="Svc", length=10, complexity=2)]) == 1
    store.insert_anomalies(run_id, [
        Anomaly(
            type=AnomalyType.HIGH_ERROR_RATE,
            severity=Severity.HIGH,
            description="12 errors detected in the last monitoring period",
            details={"count": 12, "threshold": 10},
        ),
    ])

    assert store.count_rows("debug_log_errors", run_id) == 2
    assert store.count_rows("governor_limits", run_id) == 1
    assert store.count_rows("code_quality", run_id) == 1
    assert store.get_anomalies(run_id) == [{
        "type": "HIGH_ERROR_RATE",
        "severity": "HIGH",
        "description": "12 errors detected in the last monitoring period",
        "details": {"count": 12, "threshold": 10},
    }]
    assert store.error_count_last_hours(1) == 2
    assert store.count_rows("debug_log_errors", run_id + 1) == 0


def test_insert_for_unknown_run_is_rejected(store: RunStore) -> None:
    with pytest.raises(PersistenceFailure):
        store.insert_error_records(4242, [_error("a")])

    assert store.count_rows("debug_log_errors", 4242) == 0


def test_failed_batch_stores_nothing(store: RunStore) -> None:
    run_id = store.start_run()

    with pytest.raises(PersistenceFailure):
        store.insert_error_records(run_id, [_error("ok"), _error("bad", line_number=object())])

    assert store.count_rows("debug_log_errors", run_id) == 0
    # The store stays usable after a rollback.
    assert store.insert_error_records(run_id, [_error("ok")]) == 1


def test_failure_after_transaction_ended_is_persistence_failure(store: RunStore) -> None:
    with pytest.raises(PersistenceFailure):
        with store._transaction("early_commit") as conn:
            conn.execute("COMMIT;")
            conn.execute("SELECT * FROM no_such_table")

    assert store.start_run() == 1


def test_read_errors_are_persistence_failures(store: RunStore) -> None:
    run_id = store.start_run()
    store._conn.execute("DROP TABLE anomalies")

    with pytest.raises(PersistenceFailure):
        store.get_anomalies(run_id)
    assert store.get_run(run_id).status is RunStatus.RUNNING


def test_schema_survives_reopen(tmp_path: Path) -> None:
    path = str(tmp_path / "monitoring.db")
    with RunStore(path) as first:
        run_id = first.start_run()
        first.end_run(run_id, RunStatus.COMPLETED, 5)

    with RunStore(path) as second:
        assert second.get_run(run_id).status is RunStatus.COMPLETED
        assert second.start_run() == run_id + 1


def test_closed_store_raises(tmp_path: Path) -> None:
    s = RunStore(str(tmp_path / "monitoring.db")).open()
    s.close()
    s.close()

    assert not s.is_open
    with pytest.raises(PersistenceFailure):
        s.start_run()


def test_open_failure_is_persistence_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")

    with pytest.raises(PersistenceFailure):
        RunStore(str(blocker / "monitoring.db")).open()


def test_in_memory_store() -> None:
    with RunStore(":memory:") as s:
        run_id = s.start_run()
        s.end_run(run_id, RunStatus.COMPLETED, 1)
        assert s.get_run(run_id).status is RunStatus.COMPLETED
