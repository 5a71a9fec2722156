"""Per-class code metrics read through the Tooling API."""

from __future__ import annotations

import math
import re
from typing import Any

import structlog

from ..auth.salesforce_auth import Connection
from ..models import ClassMetrics, QualitySnapshot
from .base import Monitor

logger = structlog.get_logger(__name__)

_COMMENTS_AND_STRINGS = re.compile(r"/\*.*?\*/|//[^\n]*|'(?:\\.|[^'\\])*'", re.DOTALL)
_DECISION_POINTS = re.compile(r"\b(?:if|for|while|catch|when)\b|&&|\|\||\?\?|\?(?!\.)", re.IGNORECASE)

# Managed package classes expose this instead of their source.
HIDDEN_BODY = "(hidden)"


def count_decision_points(source: str) -> int:
    """Count branching constructs in Apex source, ignoring comments and string literals."""
    code = _COMMENTS_AND_STRINGS.sub(" ", source or "")
    return len(_DECISION_POINTS.findall(code))


def compute_complexity(body: str | None, method_count: int) -> int | None:
    """Average cyclomatic complexity per method, rounded up.

    Each method contributes one base path plus its decision points. Without
    per-method bodies the class's decision points are spread evenly over the
    methods. Returns None when the source is unavailable.
    """
    if not body or body.strip() == HIDDEN_BODY:
        return None
    methods = max(int(method_count or 0), 1)
    return math.ceil(count_decision_points(body) / methods) + 1


def coverage_percent(covered: Any, uncovered: Any) -> float | None:
    try:
        covered_n = int(covered or 0)
        total = covered_n + int(uncovered or 0)
    except (TypeError, ValueError):
        return None
    if total <= 0:
        return None
    return round(covered_n / total * 100.0, 1)


class CodeQualityMonitor(Monitor[QualitySnapshot]):
    """Collects length, complexity and coverage for active Apex classes."""

    name = "code_quality"

    def empty_snapshot(self) -> QualitySnapshot:
        return QualitySnapshot.empty()

    async def collect(self, connection: Connection) -> QualitySnapshot:
        classes = await self.analyze_apex_classes(connection)

        logger.info("Code quality monitoring complete",
                    total_classes=len(classes),
                    with_complexity=sum(1 for c in classes if c.complexity is not None),
                    with_coverage=sum(1 for c in classes if c.test_coverage is not None))
        return QualitySnapshot(classes=classes)

    async def analyze_apex_classes(self, connection: Connection) -> list[ClassMetrics]:
        rows = await self.run_query(
            connection,
            """
            SELECT Id, Name, LengthWithoutComments, ApiVersion, Status, Body
            FROM ApexClass
            WHERE Status = 'Active'
            ORDER BY Name
            LIMIT 1000
            """,
            tooling=True,
        )
        coverage = await self.query_coverage(connection)

        classes = []
        for row in rows:
            method_count = await self.query_method_count(connection, row)
            classes.append(ClassMetrics(
                name=row.get("Name") or "",
                length=int(row.get("LengthWithoutComments") or 0),
                complexity=compute_complexity(row.get("Body"), method_count),
                api_version=str(row["ApiVersion"]) if row.get("ApiVersion") is not None else None,
                test_coverage=coverage.get(row.get("Id")),
            ))
        return classes

    async def query_method_count(self, connection: Connection, row: dict[str, Any]) -> int:
        """Number of methods from the class's symbol table, or 0 when unavailable."""
        class_id = row.get("Id")
        if not class_id:
            return 0
        try:
            result = await self.run_query(
                connection,
                f"SELECT SymbolTable FROM ApexClass WHERE Id = '{class_id}'",
                tooling=True,
            )
        except Exception as e:
            logger.warning("Failed to get symbol table", class_name=row.get("Name"), error=str(e))
            return 0
        symbol_table = (result[0] if result else {}).get("SymbolTable") or {}
        return len(symbol_table.get("methods") or [])

    async def query_coverage(self, connection: Connection) -> dict[str, float]:
        """Aggregate line coverage keyed by class id."""
        try:
            rows = await self.run_query(
                connection,
                """
                SELECT ApexClassOrTriggerId, NumLinesCovered, NumLinesUncovered
                FROM ApexCodeCoverageAggregate
                """,
                tooling=True,
            )
        except Exception as e:
            logger.warning("Failed to query code coverage", error=str(e))
            return {}

        coverage: dict[str, float] = {}
        for row in rows:
            percent = coverage_percent(row.get("NumLinesCovered"), row.get("NumLinesUncovered"))
            if row.get("ApexClassOrTriggerId") and percent is not None:
                coverage[row["ApexClassOrTriggerId"]] = percent
        return coverage
