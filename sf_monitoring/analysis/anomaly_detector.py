"""Threshold rules that turn monitoring snapshots into anomalies."""

from __future__ import annotations

import structlog

from ..config import Thresholds
from ..models import (
    LIMIT_RESOURCES,
    Anomaly,
    AnomalyType,
    ClassMetrics,
    ErrorSnapshot,
    LimitSnapshot,
    LimitUsageRecord,
    MonitoringResults,
    QualityIssue,
    QualitySnapshot,
    Severity,
)

logger = structlog.get_logger(__name__)

CRITICAL_LIMIT_PERCENT = 90.0
HIGH_LIMIT_PERCENT = 80.0
MEDIUM_QUALITY_ISSUE_COUNT = 3


def limit_severity(max_percent: float) -> Severity:
    if max_percent >= CRITICAL_LIMIT_PERCENT:
        return Severity.CRITICAL
    if max_percent >= HIGH_LIMIT_PERCENT:
        return Severity.HIGH
    return Severity.MEDIUM


class AnomalyDetector:
    """Evaluates snapshots against thresholds.

    Deterministic: the same results and thresholds always give the same list,
    ordered error anomalies first, then limit anomalies, then quality
    anomalies, each in input order.
    """

    def __init__(self, thresholds: Thresholds):
        self.thresholds = thresholds

    def detect(self, results: MonitoringResults) -> list[Anomaly]:
        anomalies: list[Anomaly] = []

        if results.debug_logs is not None:
            anomalies.extend(self.detect_error_anomalies(results.debug_logs))

        if results.governor_limits is not None:
            anomalies.extend(self.detect_limit_anomalies(results.governor_limits))

        if results.code_quality is not None:
            anomalies.extend(self.detect_quality_anomalies(results.code_quality))

        logger.info("Anomaly detection complete", total_anomalies=len(anomalies))
        return anomalies

    def detect_error_anomalies(self, snapshot: ErrorSnapshot) -> list[Anomaly]:
        anomalies = []
        summary = snapshot.summary
        thresholds = self.thresholds.error_rate

        if summary.total_count >= thresholds.absolute_count:
            anomalies.append(Anomaly(
                type=AnomalyType.HIGH_ERROR_RATE,
                severity=Severity.HIGH,
                description=f"{summary.total_count} errors detected in the last monitoring period",
                details={
                    "count": summary.total_count,
                    "threshold": thresholds.absolute_count,
                    "error_types": dict(summary.error_types),
                },
            ))

        if summary.unique_error_type_count > thresholds.max_unique_types:
            anomalies.append(Anomaly(
                type=AnomalyType.MULTIPLE_ERROR_TYPES,
                severity=Severity.MEDIUM,
                description=f"{summary.unique_error_type_count} different error types detected",
                details={
                    "unique_count": summary.unique_error_type_count,
                    "threshold": thresholds.max_unique_types,
                    "error_types": dict(summary.error_types),
                },
            ))

        return anomalies

    def exceeded_resources(self, record: LimitUsageRecord) -> list[str]:
        """Resources whose usage reached their own threshold."""
        limits = self.thresholds.governor_limits
        percentages = record.percentages()
        return [
            resource for resource, _label in LIMIT_RESOURCES
            if resource in percentages and percentages[resource] >= getattr(limits, resource)
        ]

    def detect_limit_anomalies(self, snapshot: LimitSnapshot) -> list[Anomaly]:
        anomalies = []
        for record in snapshot.records:
            exceeded = self.exceeded_resources(record)
            if not exceeded:
                continue

            raw = record.percentages()
            max_percent = round(record.max_percent_used, 1)
            percentages = {label: round(raw[resource], 1) for resource, label in LIMIT_RESOURCES if resource in raw}
            anomalies.append(Anomaly(
                type=AnomalyType.HIGH_LIMIT_USAGE,
                severity=limit_severity(record.max_percent_used),
                description=f"{record.class_name} approaching governor limits ({max_percent}% usage)",
                details={
                    "class_name": record.class_name,
                    "method_name": record.method_name,
                    "percentages": percentages,
                    "exceeded": exceeded,
                    "max_percent": max_percent,
                },
            ))
        return anomalies

    def identify_issues(self, classes: list[ClassMetrics]) -> list[QualityIssue]:
        thresholds = self.thresholds.code_quality
        issues = []

        for cls in classes:
            class_issues = []

            if cls.complexity is not None and cls.complexity > thresholds.cyclomatic_complexity:
                class_issues.append(f"High complexity: {cls.complexity}")

            if cls.length > thresholds.class_length:
                class_issues.append(f"Class too long: {cls.length} lines")

            if cls.test_coverage is not None and cls.test_coverage < thresholds.min_test_coverage:
                class_issues.append(f"Low test coverage: {cls.test_coverage}%")

            if class_issues:
                issues.append(QualityIssue(
                    class_name=cls.name,
                    issues=class_issues,
                    complexity=cls.complexity,
                    length=cls.length,
                    test_coverage=cls.test_coverage,
                ))

        return issues

    def detect_quality_anomalies(self, snapshot: QualitySnapshot) -> list[Anomaly]:
        anomalies = []
        for issue in self.identify_issues(snapshot.classes):
            severity = Severity.MEDIUM if len(issue.issues) >= MEDIUM_QUALITY_ISSUE_COUNT else Severity.LOW
            anomalies.append(Anomaly(
                type=AnomalyType.CODE_QUALITY_ISSUE,
                severity=severity,
                description=f"{issue.class_name} has {len(issue.issues)} quality issue(s)",
                details={
                    "class_name": issue.class_name,
                    "issues": list(issue.issues),
                    "metrics": issue.metrics(),
                },
            ))
        return anomalies
