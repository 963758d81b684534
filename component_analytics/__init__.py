"""
Component Analytics.

Telemetry pipeline for third-party installable components: buffered event
ingestion, hourly and daily rollups, error fingerprinting and grouping, and
threshold/spike alerting against rolling baselines.

Usage:
    from component_analytics import AnalyticsService, AnalyticsConfig

    service = AnalyticsService(AnalyticsConfig.from_file("config.yml"))
    await service.start()

    service.collector.record("comp-1", "site-1", "render", "mount", duration_ms=42.0)
"""

from component_analytics.aggregation import Aggregator, AggregationScheduler
from component_analytics.alerts import AlertEvaluator, EvaluationScheduler, NotificationDispatcher
from component_analytics.collector import TelemetryCollector
from component_analytics.config import AnalyticsConfig
from component_analytics.exceptions import (
    AnalyticsError,
    ConfigurationError,
    InvalidEventError,
    StoreUnavailableError,
)
from component_analytics.grouping import ErrorGrouper, compute_fingerprint, normalize_stack
from component_analytics.live_stream import LiveStream
from component_analytics.queries import AnalyticsQueries
from component_analytics.service import AnalyticsService
from component_analytics.storage import InMemoryEventStore, PostgresEventStore

__version__ = "1.0.0"

__all__ = [
    "AnalyticsService",
    "AnalyticsConfig",
    "TelemetryCollector",
    "ErrorGrouper",
    "compute_fingerprint",
    "normalize_stack",
    "Aggregator",
    "AggregationScheduler",
    "AlertEvaluator",
    "EvaluationScheduler",
    "NotificationDispatcher",
    "LiveStream",
    "AnalyticsQueries",
    "InMemoryEventStore",
    "PostgresEventStore",
    "AnalyticsError",
    "StoreUnavailableError",
    "ConfigurationError",
    "InvalidEventError",
]
