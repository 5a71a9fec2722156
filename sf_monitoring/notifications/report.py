"""Run report rendering (HTML and JSON)."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..config import ReportSettings
from ..models import Anomaly, AnomalyType, MonitoringResults

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"


def summarize(anomalies: list[Anomaly], results: MonitoringResults) -> dict[str, int]:
    """Headline counts shown at the top of every report."""
    return {
        "anomaly_count": len(anomalies),
        "error_count": results.debug_logs.summary.total_count if results.debug_logs is not None else 0,
        "high_limit_count": sum(1 for a in anomalies if a.type is AnomalyType.HIGH_LIMIT_USAGE),
        "quality_issue_count": sum(1 for a in anomalies if a.type is AnomalyType.CODE_QUALITY_ISSUE),
    }


class ReportGenerator:
    """Renders run reports and writes them to the reports directory."""

    def __init__(self, settings: ReportSettings):
        self.settings = settings
        self.reports_dir = Path(settings.output_dir)
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    def render_html(self, anomalies: list[Anomaly], results: MonitoringResults, generated_at: datetime | None = None) -> str:
        generated_at = generated_at or datetime.now(timezone.utc)
        template = self.jinja_env.get_template("report.html")
        return template.render(
            generated_at=generated_at.isoformat(),
            anomalies=[a.to_dict() for a in anomalies],
            summary=summarize(anomalies, results),
        )

    def build_report_data(self, anomalies: list[Anomaly], results: MonitoringResults, generated_at: datetime | None = None) -> dict[str, Any]:
        generated_at = generated_at or datetime.now(timezone.utc)
        return {
            "generated_at": generated_at.isoformat(),
            "summary": summarize(anomalies, results),
            "anomalies": [a.to_dict() for a in anomalies],
            "results": results.to_dict(),
        }

    def save(self, anomalies: list[Anomaly], results: MonitoringResults) -> list[str]:
        """Write the enabled report formats; returns the written paths."""
        generated_at = datetime.now(timezone.utc)
        stamp = generated_at.strftime("%Y%m%d_%H%M%S_%f")
        self.reports_dir.mkdir(parents=True, exist_ok=True)

        written = []
        if self.settings.generate_html:
            html_path = self.reports_dir / f"report_{stamp}.html"
            html_path.write_text(self.render_html(anomalies, results, generated_at), encoding="utf-8")
            written.append(str(html_path))

        if self.settings.generate_json:
            json_path = self.reports_dir / f"report_{stamp}.json"
            with open(json_path, "w", encoding="utf-8") as f:
                json.dump(self.build_report_data(anomalies, results, generated_at), f, indent=2, default=str)
            written.append(str(json_path))

        logger.info("Report saved", files=written)
        return written
