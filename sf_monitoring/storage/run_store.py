"""SQLite persistence for runs, raw monitoring facts and anomalies."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import structlog

from ..errors import PersistenceFailure, RunAlreadyFinished
from ..models import (
    Anomaly,
    ClassMetrics,
    ErrorRecord,
    LimitUsageRecord,
    MonitoringRun,
    RunStatus,
)

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing database path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # WAL is unavailable for in-memory databases and some filesystems.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitoring_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          started_at_ts REAL NOT NULL,
          status TEXT NOT NULL, -- running|completed|failed
          duration_ms INTEGER
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS debug_log_errors (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_id INTEGER NOT NULL REFERENCES monitoring_runs(id),
          timestamp TEXT,
          log_id TEXT,
          error_type TEXT,
          error_message TEXT,
          class_name TEXT,
          method_name TEXT,
          line_number INTEGER,
          recorded_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS governor_limits (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_id INTEGER NOT NULL REFERENCES monitoring_runs(id),
          timestamp TEXT,
          class_name TEXT,
          method_name TEXT,
          soql_queries_used INTEGER,
          soql_queries_limit INTEGER,
          dml_statements_used INTEGER,
          dml_statements_limit INTEGER,
          cpu_time_used INTEGER,
          cpu_time_limit INTEGER,
          heap_size_used INTEGER,
          heap_size_limit INTEGER
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS code_quality (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_id INTEGER NOT NULL REFERENCES monitoring_runs(id),
          class_name TEXT,
          cyclomatic_complexity INTEGER,
          class_length INTEGER,
          test_coverage REAL,
          api_version TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS anomalies (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_id INTEGER NOT NULL REFERENCES monitoring_runs(id),
          created_at_ts REAL NOT NULL,
          anomaly_type TEXT NOT NULL,
          severity TEXT NOT NULL,
          description TEXT,
          details_json TEXT NOT NULL DEFAULT '{}'
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_errors_recorded ON debug_log_errors(recorded_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_anomalies_run ON anomalies(run_id);")


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);"
    )
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


class RunStore:
    """Single source of historical truth for monitoring runs.

    Every bulk insert is one transaction: either the whole batch is stored or
    none of it is. A run's terminal status can be written only once.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def open(self) -> "RunStore":
        if self._conn is not None:
            return self
        try:
            self._conn = _connect(self.db_path)
            _ensure_schema_conn(self._conn)
        except (sqlite3.Error, OSError, ValueError, RuntimeError) as e:
            raise PersistenceFailure(f"Failed to open database {self.db_path}: {e}") from e
        logger.info("Database initialized", path=self.db_path)
        return self

    def __enter__(self) -> "RunStore":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceFailure("Run store is not open")
        return self._conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as e:
                raise PersistenceFailure(f"Database {operation} failed: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT;")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise PersistenceFailure(f"Database {operation} failed: {e}", context={"operation": operation}) from e
            except Exception:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        # A failed COMMIT may already have ended the transaction.
        if conn.in_transaction:
            conn.execute("ROLLBACK;")

    @contextmanager
    def _reading(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            try:
                yield conn
            except sqlite3.Error as e:
                raise PersistenceFailure(f"Database {operation} failed: {e}", context={"operation": operation}) from e

    def start_run(self) -> int:
        """Insert a run in status running and return its id."""
        with self._transaction("start_run") as conn:
            cur = conn.execute(
                "INSERT INTO monitoring_runs (started_at_ts, status) VALUES (?, ?)",
                (_utc_ts(), RunStatus.RUNNING.value),
            )
            run_id = int(cur.lastrowid)
        logger.info("Started monitoring run", run_id=run_id)
        return run_id

    def end_run(self, run_id: int, status: RunStatus | str, duration_ms: int) -> None:
        """Record the terminal status of a run. Only the first call succeeds."""
        status = RunStatus(status)
        if not status.terminal:
            raise ValueError(f"end_run requires a terminal status, got {status.value}")

        with self._transaction("end_run") as conn:
            row = conn.execute("SELECT status FROM monitoring_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                raise PersistenceFailure(f"Unknown run id {run_id}", context={"run_id": run_id})
            if row["status"] != RunStatus.RUNNING.value:
                raise RunAlreadyFinished(run_id, row["status"])
            conn.execute(
                "UPDATE monitoring_runs SET status = ?, duration_ms = ? WHERE id = ?",
                (status.value, int(duration_ms), run_id),
            )
        logger.info("Finished monitoring run", run_id=run_id, status=status.value, duration_ms=int(duration_ms))

    def insert_error_records(self, run_id: int, records: list[ErrorRecord]) -> int:
        now = _utc_ts()
        with self._transaction("insert_error_records") as conn:
            conn.executemany(
                """
                INSERT INTO debug_log_errors
                  (run_id, timestamp, log_id, error_type, error_message, class_name, method_name, line_number,
                   recorded_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (run_id, r.timestamp, r.log_id, r.error_type, r.error_message, r.class_name, r.method_name,
                     r.line_number, now)
                    for r in records
                ],
            )
        return len(records)

    def insert_limit_records(self, run_id: int, records: list[LimitUsageRecord]) -> int:
        with self._transaction("insert_limit_records") as conn:
            conn.executemany(
                """
                INSERT INTO governor_limits
                  (run_id, timestamp, class_name, method_name, soql_queries_used, soql_queries_limit,
                   dml_statements_used, dml_statements_limit, cpu_time_used, cpu_time_limit,
                   heap_size_used, heap_size_limit)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (run_id, r.timestamp, r.class_name, r.method_name, r.soql_queries_used, r.soql_queries_limit,
                     r.dml_statements_used, r.dml_statements_limit, r.cpu_time_used, r.cpu_time_limit,
                     r.heap_size_used, r.heap_size_limit)
                    for r in records
                ],
            )
        return len(records)

    def insert_quality_metrics(self, run_id: int, classes: list[ClassMetrics]) -> int:
        with self._transaction("insert_quality_metrics") as conn:
            conn.executemany(
                """
                INSERT INTO code_quality
                  (run_id, class_name, cyclomatic_complexity, class_length, test_coverage, api_version)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(run_id, c.name, c.complexity, c.length, c.test_coverage, c.api_version) for c in classes],
            )
        return len(classes)

    def insert_anomalies(self, run_id: int, anomalies: list[Anomaly]) -> int:
        now = _utc_ts()
        with self._transaction("insert_anomalies") as conn:
            conn.executemany(
                """
                INSERT INTO anomalies (run_id, created_at_ts, anomaly_type, severity, description, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (run_id, now, a.type.value, a.severity.value, a.description, _json_dumps(a.details))
                    for a in anomalies
                ],
            )
        return len(anomalies)

    def _row_to_run(self, row: sqlite3.Row) -> MonitoringRun:
        return MonitoringRun(
            id=int(row["id"]),
            started_at=datetime.fromtimestamp(float(row["started_at_ts"]), tz=timezone.utc),
            status=RunStatus(row["status"]),
            duration_ms=row["duration_ms"],
        )

    def get_run(self, run_id: int) -> MonitoringRun | None:
        with self._reading("get_run") as conn:
            row = conn.execute("SELECT * FROM monitoring_runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, limit: int = 20) -> list[MonitoringRun]:
        with self._reading("list_runs") as conn:
            rows = conn.execute(
                "SELECT * FROM monitoring_runs ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def get_anomalies(self, run_id: int) -> list[dict[str, Any]]:
        with self._reading("get_anomalies") as conn:
            rows = conn.execute(
                "SELECT anomaly_type, severity, description, details_json FROM anomalies WHERE run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
        return [
            {
                "type": r["anomaly_type"],
                "severity": r["severity"],
                "description": r["description"],
                "details": _json_loads(r["details_json"]) or {},
            }
            for r in rows
        ]

    def count_rows(self, table: str, run_id: int) -> int:
        if table not in {"debug_log_errors", "governor_limits", "code_quality", "anomalies"}:
            raise ValueError(f"Unknown table: {table}")
        with self._reading("count_rows") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM {table} WHERE run_id = ?", (run_id,)
            ).fetchone()
        return int(row["n"])

    def error_count_last_hours(self, hours: float) -> int:
        """Errors recorded by any run within the last ``hours``."""
        cutoff = _utc_ts() - float(hours) * 3600.0
        with self._reading("error_count_last_hours") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM debug_log_errors WHERE recorded_at_ts >= ?", (cutoff,)
            ).fetchone()
        return int(row["n"])

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info("Database connection closed")
