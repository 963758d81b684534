"""
Data model for component analytics.

Raw telemetry (events, error occurrences), the rollups derived from it, error
groups, alert configuration and alert incidents. Payload and metadata stay as
free-form maps at the boundary; every field the pipeline computes on is typed.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# ENUMS - No magic strings
# ============================================================================


class EventType(str, Enum):
    """Kinds of telemetry a component can emit."""

    RENDER = "render"
    API_CALL = "api_call"
    HOOK_EXECUTION = "hook_execution"
    USER_INTERACTION = "user_interaction"
    ERROR = "error"
    PERFORMANCE = "performance"


class ErrorGroupStatus(str, Enum):
    """Triage state of an error group."""

    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ErrorPriority(str, Enum):
    """Triage priority of an error group."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertType(str, Enum):
    """Category of an alert rule."""

    ERROR_RATE = "error_rate"
    ERROR_SPIKE = "error_spike"
    PERFORMANCE = "performance"
    USAGE = "usage"
    CUSTOM = "custom"


class AlertMetric(str, Enum):
    """Metrics an alert rule can watch."""

    ERROR_RATE = "error_rate"
    AVG_RENDER_TIME = "avg_render_time"
    ERROR_COUNT = "error_count"
    RENDER_COUNT = "render_count"


class AlertCondition(str, Enum):
    """Comparison applied between a metric and a rule threshold."""

    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    SPIKE = "spike"  # threshold is a percentage above the baseline mean


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Alert lifecycle states."""

    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


OPEN_ALERT_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class HealthState(str, Enum):
    """Coarse component health derived from recent telemetry."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# ============================================================================
# RAW TELEMETRY
# ============================================================================


def as_utc(moment: datetime) -> datetime:
    """Read naive timestamps as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class Event(BaseModel):
    """One telemetry record. Written once by the collector, never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    component_id: str = Field(min_length=1, max_length=255)
    version_id: Optional[str] = None
    site_id: str = Field(min_length=1, max_length=255)

    event_type: EventType
    event_name: str = Field(min_length=1, max_length=255)
    category: Optional[str] = None

    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    duration_ms: Optional[float] = Field(None, ge=0)
    memory_kb: Optional[float] = Field(None, ge=0)

    page_path: Optional[str] = None
    session_id: Optional[str] = None
    country_code: Optional[str] = Field(None, max_length=2)

    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class ErrorEvent(BaseModel):
    """An error occurrence as reported by a component, before grouping."""

    component_id: str = Field(min_length=1, max_length=255)
    site_id: str = Field(min_length=1, max_length=255)
    version_id: Optional[str] = None

    error_type: str = Field(min_length=1)
    error_name: str = Field(min_length=1)
    message: str = ""
    stack: Optional[str] = None

    # Source location
    source_file: Optional[str] = None
    source_line: Optional[int] = None
    source_column: Optional[int] = None

    # Environment
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    page_path: Optional[str] = None
    session_id: Optional[str] = None
    ip_hash: Optional[str] = None

    # State snapshots captured at the time of failure
    component_state: Dict[str, Any] = Field(default_factory=dict)
    props_snapshot: Dict[str, Any] = Field(default_factory=dict)

    occurred_at: datetime

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class ErrorRecord(ErrorEvent):
    """Persisted row for one error occurrence."""

    id: str = Field(min_length=1)
    fingerprint: str = Field(min_length=32, max_length=32)


# ============================================================================
# ERROR GROUPS
# ============================================================================


class ErrorGroup(BaseModel):
    """Deduplicated representation of one kind of error for one component."""

    id: str
    component_id: str
    fingerprint: str

    error_type: str
    error_name: str
    message: str = ""
    sample_stack: Optional[str] = None

    occurrence_count: int = Field(ge=1)
    affected_sites_count: int = Field(ge=0)
    affected_sessions_count: int = Field(ge=0)

    first_seen: datetime
    last_seen: datetime

    status: ErrorGroupStatus = ErrorGroupStatus.OPEN
    priority: ErrorPriority = ErrorPriority.MEDIUM
    affected_versions: List[str] = Field(default_factory=list)

    assigned_to: Optional[str] = None
    resolution_notes: Optional[str] = None


# ============================================================================
# ROLLUPS
# ============================================================================


class HourlyAggregate(BaseModel):
    """Rollup of one hour of raw events for one component version."""

    id: str
    component_id: str
    version_id: Optional[str] = None
    hour_bucket: datetime

    total_renders: int = Field(ge=0)
    unique_sites: int = Field(ge=0)
    unique_sessions: int = Field(ge=0)

    avg_render_time: Optional[float] = None
    p50_render_time: Optional[float] = None
    p95_render_time: Optional[float] = None
    p99_render_time: Optional[float] = None
    max_render_time: Optional[float] = None

    total_api_calls: int = Field(ge=0)
    api_success_count: int = Field(ge=0)
    api_error_count: int = Field(ge=0)
    avg_api_latency: Optional[float] = None

    total_errors: int = Field(ge=0)
    error_breakdown: Dict[str, int] = Field(default_factory=dict)

    total_interactions: int = Field(ge=0)
    interaction_breakdown: Dict[str, int] = Field(default_factory=dict)

    country_breakdown: Dict[str, int] = Field(default_factory=dict)

    memory_min_kb: Optional[float] = None
    memory_avg_kb: Optional[float] = None
    memory_max_kb: Optional[float] = None
    memory_samples: int = Field(default=0, ge=0)


class HourlyDataPoint(BaseModel):
    """One hour inside a daily rollup, kept for charting."""

    hour: int = Field(ge=0, le=23)
    renders: int = Field(ge=0)
    errors: int = Field(ge=0)
    avg_render_time: Optional[float] = None


class DailyAggregate(BaseModel):
    """Rollup of one day of hourly aggregates for one component version."""

    id: str
    component_id: str
    version_id: Optional[str] = None
    date_bucket: date

    total_renders: int = Field(ge=0)
    unique_sites: int = Field(ge=0)
    unique_sessions: int = Field(ge=0)

    avg_render_time: Optional[float] = None
    p95_render_time: Optional[float] = None  # max of hourly p95s, an approximation
    max_render_time: Optional[float] = None

    total_api_calls: int = Field(ge=0)
    api_success_count: int = Field(ge=0)
    api_error_count: int = Field(ge=0)
    avg_api_latency: Optional[float] = None
    api_success_rate: float = Field(ge=0, le=1)

    total_errors: int = Field(ge=0)
    error_rate: float = Field(ge=0)
    error_breakdown: Dict[str, int] = Field(default_factory=dict)

    total_interactions: int = Field(ge=0)
    interaction_breakdown: Dict[str, int] = Field(default_factory=dict)

    country_breakdown: Dict[str, int] = Field(default_factory=dict)

    memory_min_kb: Optional[float] = None
    memory_avg_kb: Optional[float] = None
    memory_max_kb: Optional[float] = None

    hourly_data: List[HourlyDataPoint] = Field(default_factory=list)


class PerformanceBaseline(BaseModel):
    """Rolling statistics for one metric, used by spike conditions."""

    component_id: str
    version_id: Optional[str] = None
    metric: AlertMetric

    mean: float
    stddev: float = Field(ge=0)
    p50: float
    p95: float
    p99: float
    sample_count: int = Field(ge=1)

    window_start: datetime
    window_end: datetime
    computed_at: datetime


# ============================================================================
# ALERTING
# ============================================================================


class AlertRule(BaseModel):
    """Externally configured alert rule."""

    id: str
    component_id: str
    name: str = ""

    alert_type: AlertType
    metric: AlertMetric
    condition: AlertCondition
    threshold: float
    window_minutes: int = Field(default=60, ge=1)
    severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True

    notify_emails: List[str] = Field(default_factory=list)
    webhook_url: Optional[str] = None


class Alert(BaseModel):
    """One incident raised by a rule."""

    id: str
    rule_id: str
    component_id: str

    alert_type: AlertType
    metric: AlertMetric
    severity: AlertSeverity

    current_value: float
    expected_value: Optional[float] = None
    threshold_value: float

    affected_sites: int = Field(default=0, ge=0)
    affected_sessions: int = Field(default=0, ge=0)

    status: AlertStatus = AlertStatus.ACTIVE
    auto_resolved: bool = False
    message: str = ""

    triggered_at: datetime
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class NotificationPayload(BaseModel):
    """Payload handed to the notification delivery layer."""

    model_config = ConfigDict(populate_by_name=True)

    alert_id: str = Field(alias="alertId")
    component_id: str = Field(alias="componentId")
    alert_type: AlertType = Field(alias="alertType")
    severity: AlertSeverity
    metric: AlertMetric
    current_value: float = Field(alias="currentValue")
    expected_value: Optional[float] = Field(None, alias="expectedValue")
    threshold: float
    timestamp: datetime


# ============================================================================
# QUERY RESULTS
# ============================================================================


class TopEvent(BaseModel):
    """Event frequency entry."""

    event_type: EventType
    event_name: str
    count: int = Field(ge=0)


class RollupGranularity(str, Enum):
    """Dashboard bucket sizes for re-bucketed daily rollups."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RollupBucket(BaseModel):
    """Daily rollups merged into one day/week/month bucket across versions."""

    period_start: date
    granularity: RollupGranularity
    total_renders: int = Field(ge=0)
    unique_sites: int = Field(ge=0)  # max of daily values, not a true distinct count
    avg_render_time: Optional[float] = None
    total_errors: int = Field(ge=0)
    error_rate: float = Field(ge=0)
    total_api_calls: int = Field(ge=0)
    api_success_rate: float = Field(ge=0, le=1)
    total_interactions: int = Field(ge=0)


class ComponentHealth(BaseModel):
    """Health summary for one component over the most recent hour."""

    component_id: str
    status: HealthState
    error_rate: Optional[float] = None
    p95_render_time: Optional[float] = None
    error_count_last_hour: int = Field(default=0, ge=0)
    checked_at: datetime


# ============================================================================
# STATISTICS MODELS
# ============================================================================


class CollectorStats(BaseModel):
    """Counters for the ingestion buffers."""

    buffered_events: int = Field(ge=0)
    buffered_errors: int = Field(ge=0)
    events_flushed: int = Field(ge=0)
    errors_flushed: int = Field(ge=0)
    flush_failures: int = Field(ge=0)
    events_requeued: int = Field(ge=0)
    events_dropped: int = Field(ge=0)
    last_flush: Optional[str] = None  # ISO timestamp
    last_error: Optional[str] = None


class TaskStats(BaseModel):
    """Counters for one periodic task."""

    name: str
    runs: int = Field(ge=0)
    errors: int = Field(ge=0)
    error_rate: float = Field(ge=0, le=1)
    last_run: Optional[str] = None  # ISO timestamp
    last_error: Optional[str] = None
