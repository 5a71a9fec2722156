"""Monitoring facts, snapshots and anomalies shared across the run cycle."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Union


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass
class MonitoringRun:
    id: int
    started_at: datetime
    status: RunStatus
    duration_ms: int | None = None


@dataclass(frozen=True)
class ErrorRecord:
    """One failed Apex execution found in the lookback window."""

    timestamp: str
    log_id: str
    error_type: str
    error_message: str
    class_name: str
    method_name: str | None = None
    line_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# (field prefix, short label) for the four governed resources.
LIMIT_RESOURCES: tuple[tuple[str, str], ...] = (
    ("soql_queries", "soql"),
    ("dml_statements", "dml"),
    ("cpu_time", "cpu"),
    ("heap_size", "heap"),
)


@dataclass(frozen=True)
class LimitUsageRecord:
    """Governor limit consumption of one executed unit of Apex.

    A ``*_used`` value is None when the platform did not report it.
    """

    timestamp: str
    class_name: str
    method_name: str
    soql_queries_used: int | None = None
    soql_queries_limit: int = 100
    dml_statements_used: int | None = None
    dml_statements_limit: int = 150
    cpu_time_used: int | None = None
    cpu_time_limit: int = 10_000
    heap_size_used: int | None = None
    heap_size_limit: int = 6_000_000

    def percentages(self) -> dict[str, float]:
        """Percent used per known resource, keyed by resource field prefix."""
        out: dict[str, float] = {}
        for resource, _label in LIMIT_RESOURCES:
            used = getattr(self, f"{resource}_used")
            limit = getattr(self, f"{resource}_limit")
            if used is None or not limit:
                continue
            out[resource] = used * 100.0 / limit
        return out

    @property
    def max_percent_used(self) -> float:
        return max(self.percentages().values(), default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ClassMetrics:
    """Raw per-class metrics read from the org."""

    name: str
    length: int
    complexity: int | None = None
    api_version: str | None = None
    test_coverage: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QualityIssue:
    """A class with one or more quality findings."""

    class_name: str
    issues: list[str]
    complexity: int | None
    length: int
    test_coverage: float | None

    def metrics(self) -> dict[str, Any]:
        return {"complexity": self.complexity, "length": self.length, "coverage": self.test_coverage}


class AnomalyType(str, enum.Enum):
    HIGH_ERROR_RATE = "HIGH_ERROR_RATE"
    MULTIPLE_ERROR_TYPES = "MULTIPLE_ERROR_TYPES"
    HIGH_LIMIT_USAGE = "HIGH_LIMIT_USAGE"
    CODE_QUALITY_ISSUE = "CODE_QUALITY_ISSUE"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


@dataclass(frozen=True)
class Anomaly:
    type: AnomalyType
    severity: Severity
    description: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "details": self.details,
        }


@dataclass
class ErrorSummary:
    total_count: int = 0
    error_types: dict[str, int] = field(default_factory=dict)
    class_errors: dict[str, int] = field(default_factory=dict)
    most_common_error: str | None = None

    @property
    def unique_error_type_count(self) -> int:
        return len(self.error_types)

    @classmethod
    def from_errors(cls, errors: list[ErrorRecord]) -> "ErrorSummary":
        error_types: dict[str, int] = {}
        class_errors: dict[str, int] = {}
        for error in errors:
            error_types[error.error_type] = error_types.get(error.error_type, 0) + 1
            if error.class_name:
                class_errors[error.class_name] = class_errors.get(error.class_name, 0) + 1

        ranked = sorted(error_types.items(), key=lambda item: (-item[1], item[0]))
        return cls(
            total_count=len(errors),
            error_types=error_types,
            class_errors=class_errors,
            most_common_error=ranked[0][0] if ranked else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "unique_error_types": self.unique_error_type_count,
            "error_types": dict(self.error_types),
            "class_errors": dict(self.class_errors),
            "most_common_error": self.most_common_error,
        }


@dataclass
class ErrorSnapshot:
    errors: list[ErrorRecord] = field(default_factory=list)
    summary: ErrorSummary = field(default_factory=ErrorSummary)

    @classmethod
    def from_errors(cls, errors: list[ErrorRecord]) -> "ErrorSnapshot":
        return cls(errors=list(errors), summary=ErrorSummary.from_errors(errors))

    @classmethod
    def empty(cls) -> "ErrorSnapshot":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {"errors": [e.to_dict() for e in self.errors], "summary": self.summary.to_dict()}


@dataclass
class ClassLimitAverage:
    count: int
    avg_soql: float | None
    avg_dml: float | None
    avg_cpu: float | None
    avg_heap: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _average(values: list[int | None]) -> float | None:
    known = [v for v in values if v is not None]
    if not known:
        return None
    return round(sum(known) / len(known), 1)


@dataclass
class LimitSnapshot:
    records: list[LimitUsageRecord] = field(default_factory=list)
    by_class: dict[str, ClassLimitAverage] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: list[LimitUsageRecord]) -> "LimitSnapshot":
        grouped: dict[str, list[LimitUsageRecord]] = {}
        for record in records:
            grouped.setdefault(record.class_name, []).append(record)

        by_class = {
            class_name: ClassLimitAverage(
                count=len(items),
                avg_soql=_average([r.soql_queries_used for r in items]),
                avg_dml=_average([r.dml_statements_used for r in items]),
                avg_cpu=_average([r.cpu_time_used for r in items]),
                avg_heap=_average([r.heap_size_used for r in items]),
            )
            for class_name, items in grouped.items()
        }
        return cls(records=list(records), by_class=by_class)

    @classmethod
    def empty(cls) -> "LimitSnapshot":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "by_class": {name: avg.to_dict() for name, avg in self.by_class.items()},
        }


@dataclass
class QualitySnapshot:
    classes: list[ClassMetrics] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "QualitySnapshot":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {"classes": [c.to_dict() for c in self.classes]}


Snapshot = Union[ErrorSnapshot, LimitSnapshot, QualitySnapshot]


@dataclass
class MonitoringResults:
    """Snapshots collected in one run; a field is None when its monitor is disabled."""

    debug_logs: ErrorSnapshot | None = None
    governor_limits: LimitSnapshot | None = None
    code_quality: QualitySnapshot | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "debug_logs": self.debug_logs.to_dict() if self.debug_logs is not None else None,
            "governor_limits": self.governor_limits.to_dict() if self.governor_limits is not None else None,
            "code_quality": self.code_quality.to_dict() if self.code_quality is not None else None,
        }


@dataclass
class RunResult:
    success: bool
    run_id: int | None = None
    duration_ms: int | None = None
    anomalies: list[Anomaly] = field(default_factory=list)
    results: MonitoringResults | None = None
    error: str | None = None

    @property
    def anomaly_count(self) -> int:
        return len(self.anomalies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "run_id": self.run_id,
            "duration_ms": self.duration_ms,
            "anomalies": self.anomaly_count,
            "error": self.error,
        }
