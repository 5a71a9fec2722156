"""Configuration management for the monitoring agent."""

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError


class _Section(BaseModel):
    """Accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class EnabledMonitors(_Section):
    debug_logs: bool = Field(default=True, description="Run the debug log error monitor")
    governor_limits: bool = Field(default=True, description="Run the governor limit monitor")
    code_quality: bool = Field(default=True, description="Run the code quality monitor")


class MonitoringIntervals(_Section):
    debug_log_hours: int = Field(default=1, ge=1, description="Lookback window for log queries")


class GovernorLimitCollection(_Section):
    fetch_log_bodies: bool = Field(default=False, description="Download ApexLog bodies to read limit usage")
    max_logs: int = Field(default=500, ge=1, description="Maximum ApexLog rows per run")


class MonitoringSection(_Section):
    enabled: EnabledMonitors = Field(default_factory=EnabledMonitors)
    intervals: MonitoringIntervals = Field(default_factory=MonitoringIntervals)
    governor_limits: GovernorLimitCollection = Field(default_factory=GovernorLimitCollection)


class ErrorRateThresholds(_Section):
    absolute_count: int = Field(default=10, ge=0, description="Errors per window that trigger HIGH_ERROR_RATE")
    max_unique_types: int = Field(default=5, ge=0, description="Distinct error types tolerated before MULTIPLE_ERROR_TYPES")


class GovernorLimitThresholds(_Section):
    soql_queries: float = Field(default=80.0, ge=0, description="Percent of the SOQL query limit")
    dml_statements: float = Field(default=80.0, ge=0, description="Percent of the DML statement limit")
    cpu_time: float = Field(default=80.0, ge=0, description="Percent of the CPU time limit")
    heap_size: float = Field(default=80.0, ge=0, description="Percent of the heap size limit")


class CodeQualityThresholds(_Section):
    cyclomatic_complexity: int = Field(default=10, ge=0)
    class_length: int = Field(default=1000, ge=0)
    min_test_coverage: float = Field(default=75.0, ge=0, le=100)


class Thresholds(_Section):
    error_rate: ErrorRateThresholds = Field(default_factory=ErrorRateThresholds)
    governor_limits: GovernorLimitThresholds = Field(default_factory=GovernorLimitThresholds)
    code_quality: CodeQualityThresholds = Field(default_factory=CodeQualityThresholds)


class StorageSection(_Section):
    database: str = Field(default="data/monitoring.db", description="SQLite database path")


class EmailSettings(_Section):
    enabled: bool = False
    on_anomaly_only: bool = Field(default=True, description="Skip all notification channels when nothing was detected")
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_user: str = ""
    smtp_password: str = ""
    sender: str = ""
    recipients: list[str] = Field(default_factory=list)


class ReportSettings(_Section):
    generate_html: bool = True
    generate_json: bool = False
    output_dir: str = Field(default="reports", description="Directory for rendered reports")


class TelegramSettings(_Section):
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""


class NotificationsSection(_Section):
    email: EmailSettings = Field(default_factory=EmailSettings)
    reports: ReportSettings = Field(default_factory=ReportSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)


class SchedulingSection(_Section):
    cron: str = Field(default="0 * * * *", description="Cron expression for recurring runs")
    run_on_startup: bool = Field(default=True, description="Run once immediately when the scheduler starts")

    @field_validator("cron")
    @classmethod
    def _five_fields(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError(f"Invalid cron expression: {value}")
        return value


class RetrySection(_Section):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)


class SalesforceSection(_Section):
    login_url: str = "https://login.salesforce.com"
    api_version: str = "59.0"
    username: str = ""
    password: str = ""
    security_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = Field(default=30.0, gt=0)


class MonitoringConfig(_Section):
    """Main configuration for the monitoring agent."""

    log_level: str = Field(default="INFO", description="Logging level")
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    thresholds: Thresholds = Field(default_factory=Thresholds)
    storage: StorageSection = Field(default_factory=StorageSection)
    notifications: NotificationsSection = Field(default_factory=NotificationsSection)
    scheduling: SchedulingSection = Field(default_factory=SchedulingSection)
    retry: RetrySection = Field(default_factory=RetrySection)
    salesforce: SalesforceSection = Field(default_factory=SalesforceSection)


# (dotted config path, env var, converter)
_ENV_OVERRIDES = (
    ("log_level", "LOG_LEVEL", str),
    ("storage.database", "SF_MONITOR_DB", str),
    ("scheduling.cron", "MONITOR_SCHEDULE", str),
    ("salesforce.login_url", "SF_LOGIN_URL", str),
    ("salesforce.username", "SF_USERNAME", str),
    ("salesforce.password", "SF_PASSWORD", str),
    ("salesforce.security_token", "SF_SECURITY_TOKEN", str),
    ("salesforce.client_id", "SF_CLIENT_ID", str),
    ("salesforce.client_secret", "SF_CLIENT_SECRET", str),
    ("notifications.email.smtp_host", "SMTP_HOST", str),
    ("notifications.email.smtp_port", "SMTP_PORT", int),
    ("notifications.email.smtp_use_tls", "SMTP_SECURE", lambda v: v.lower() in ("true", "1", "yes")),
    ("notifications.email.smtp_user", "SMTP_USER", str),
    ("notifications.email.smtp_password", "SMTP_PASS", str),
    ("notifications.email.recipients", "NOTIFICATION_EMAIL", lambda v: [p.strip() for p in v.split(",") if p.strip()]),
    ("notifications.telegram.bot_token", "TELEGRAM_BOT_TOKEN", str),
    ("notifications.telegram.chat_id", "TELEGRAM_CHAT_ID", str),
)


def _set_path(data: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def load_config(config_path: Optional[str] = None) -> MonitoringConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("MONITORING_CONFIG", "config/monitoring.yaml")

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    for dotted, env_name, convert in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        try:
            _set_path(config_data, dotted, convert(value))
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_name}: {value!r}") from e

    try:
        return MonitoringConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
