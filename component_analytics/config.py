"""
Configuration for the component analytics service.

Loaded from a YAML file, then overridden by ANALYTICS_* environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from component_analytics.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class DatabaseSettings(BaseModel):
    """PostgreSQL connection settings. No dsn means in-memory storage."""

    dsn: Optional[str] = None
    pool_min_size: int = Field(default=2, ge=1)
    pool_max_size: int = Field(default=10, ge=1)
    command_timeout: float = Field(default=10.0, gt=0)


class CollectorSettings(BaseModel):
    """Ingestion buffer settings."""

    batch_size: int = Field(default=100, ge=1)
    flush_interval_seconds: float = Field(default=5.0, gt=0)
    max_buffer_size: int = Field(default=10_000, ge=1)
    max_error_buffer_size: int = Field(default=1_000, ge=1)
    ip_hash_salt: str = Field(default="component-analytics", min_length=1)


class AggregationSettings(BaseModel):
    """Rollup and baseline scheduling."""

    hourly_interval_seconds: int = Field(default=300, ge=1)
    daily_interval_seconds: int = Field(default=3600, ge=1)
    baseline_interval_seconds: int = Field(default=3600, ge=1)
    late_event_lookback_hours: int = Field(default=1, ge=0, le=48)
    baseline_days: int = Field(default=7, ge=1, le=90)


class AlertSettings(BaseModel):
    """Alert evaluation and notification settings."""

    evaluation_interval_seconds: int = Field(default=60, ge=1)
    webhook_timeout_seconds: float = Field(default=5.0, gt=0)


class ApiSettings(BaseModel):
    """HTTP query/ingestion API settings."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=8890, gt=0, le=65535)


class LoggingSettings(BaseModel):
    """Log destinations and levels."""

    log_dir: str = "/var/log/component-analytics"
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False


# Environment variable -> (section, field)
ENV_OVERRIDES: Dict[str, tuple] = {
    "ANALYTICS_DATABASE_URL": ("database", "dsn"),
    "ANALYTICS_IP_HASH_SALT": ("collector", "ip_hash_salt"),
    "ANALYTICS_BATCH_SIZE": ("collector", "batch_size"),
    "ANALYTICS_FLUSH_INTERVAL": ("collector", "flush_interval_seconds"),
    "ANALYTICS_EVALUATION_INTERVAL": ("alerts", "evaluation_interval_seconds"),
    "ANALYTICS_API_HOST": ("api", "host"),
    "ANALYTICS_API_PORT": ("api", "port"),
    "ANALYTICS_LOG_DIR": ("logging", "log_dir"),
    "ANALYTICS_LOG_LEVEL": ("logging", "console_level"),
}


class AnalyticsConfig(BaseModel):
    """Top-level service configuration."""

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    collector: CollectorSettings = Field(default_factory=CollectorSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_file(
        cls, path: str, environ: Optional[Mapping[str, str]] = None
    ) -> "AnalyticsConfig":
        """
        Load configuration from YAML, then apply environment overrides.

        Args:
            path: Path to the YAML file
            environ: Environment mapping (defaults to os.environ)

        Raises:
            ConfigurationError: File missing, unparsable, or invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {path}")

        return cls._build(raw, environ)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AnalyticsConfig":
        """Defaults with environment overrides applied."""
        return cls._build({}, environ)

    @classmethod
    def _build(
        cls, raw: Dict[str, Any], environ: Optional[Mapping[str, str]]
    ) -> "AnalyticsConfig":
        env = os.environ if environ is None else environ
        for var, (section, field) in ENV_OVERRIDES.items():
            if var in env:
                raw.setdefault(section, {})[field] = env[var]
                logger.debug(f"Config override from {var}")

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def save(self, path: str) -> None:
        """Write configuration as YAML."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)
