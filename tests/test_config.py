from __future__ import annotations

from pathlib import Path

import pytest

from sf_monitoring.config import MonitoringConfig, load_config
from sf_monitoring.errors import ConfigurationError

_ENV_NAMES = (
    "LOG_LEVEL", "SF_MONITOR_DB", "MONITOR_SCHEDULE", "SF_LOGIN_URL", "SF_USERNAME", "SF_PASSWORD",
    "SF_SECURITY_TOKEN", "SF_CLIENT_ID", "SF_CLIENT_SECRET", "SMTP_HOST", "SMTP_PORT", "SMTP_SECURE",
    "SMTP_USER", "SMTP_PASS", "NOTIFICATION_EMAIL", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID",
    "MONITORING_CONFIG",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    config = load_config(str(tmp_path / "missing.yaml"))

    assert config == MonitoringConfig()
    assert config.thresholds.error_rate.absolute_count == 10
    assert config.thresholds.governor_limits.soql_queries == 80.0
    assert config.thresholds.code_quality.min_test_coverage == 75.0
    assert config.scheduling.cron == "0 * * * *"
    assert config.storage.database == "data/monitoring.db"
    assert config.retry.max_attempts == 3


def test_camel_case_keys_are_accepted(tmp_path: Path) -> None:
    path = tmp_path / "monitoring.yaml"
    path.write_text(
        """
monitoring:
  enabled:
    debugLogs: true
    governorLimits: false
    codeQuality: true
  intervals:
    debugLogHours: 6
thresholds:
  errorRate:
    absoluteCount: 3
  governorLimits:
    soqlQueries: 70
  codeQuality:
    cyclomaticComplexity: 15
    classLength: 500
    minTestCoverage: 85
""",
        encoding="utf-8",
    )

    config = load_config(str(path))

    assert config.monitoring.enabled.governor_limits is False
    assert config.monitoring.intervals.debug_log_hours == 6
    assert config.thresholds.error_rate.absolute_count == 3
    assert config.thresholds.governor_limits.soql_queries == 70.0
    assert config.thresholds.governor_limits.cpu_time == 80.0
    assert config.thresholds.code_quality.cyclomatic_complexity == 15
    assert config.thresholds.code_quality.class_length == 500
    assert config.thresholds.code_quality.min_test_coverage == 85.0


def test_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "monitoring.yaml"
    path.write_text("storage:\n  database: from_file.db\nscheduling:\n  cron: '0 * * * *'\n", encoding="utf-8")
    monkeypatch.setenv("MONITORING_CONFIG", str(path))
    monkeypatch.setenv("SF_MONITOR_DB", str(tmp_path / "env.db"))
    monkeypatch.setenv("MONITOR_SCHEDULE", "*/15 * * * *")
    monkeypatch.setenv("SF_USERNAME", "ops@example.com")
    monkeypatch.setenv("SMTP_PORT", "2525")
    monkeypatch.setenv("SMTP_SECURE", "false")
    monkeypatch.setenv("NOTIFICATION_EMAIL", "a@example.com, b@example.com")

    config = load_config()

    assert config.storage.database == str(tmp_path / "env.db")
    assert config.scheduling.cron == "*/15 * * * *"
    assert config.salesforce.username == "ops@example.com"
    assert config.notifications.email.smtp_port == 2525
    assert config.notifications.email.smtp_use_tls is False
    assert config.notifications.email.recipients == ["a@example.com", "b@example.com"]


def test_shipped_example_config_loads() -> None:
    path = Path(__file__).resolve().parent.parent / "config" / "monitoring.yaml"

    config = load_config(str(path))

    assert config.monitoring.enabled.debug_logs is True
    assert config.notifications.reports.output_dir == "reports"


@pytest.mark.parametrize(
    "content",
    [
        "thresholds: [1, 2",
        "- just\n- a\n- list\n",
        "thresholds:\n  errorRate:\n    absoluteCount: lots\n",
        "scheduling:\n  cron: hourly\n",
        "retry:\n  maxAttempts: 0\n",
    ],
)
def test_invalid_config_raises_configuration_error(tmp_path: Path, content: str) -> None:
    path = tmp_path / "monitoring.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(str(path))


def test_invalid_env_value_raises_configuration_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SMTP_PORT", "not-a-port")

    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "missing.yaml"))
