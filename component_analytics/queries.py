"""
Read-side queries over the event store for dashboards and the HTTP API.
"""

import logging
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Sequence

from component_analytics.aggregation import percentile, rollup_by_granularity
from component_analytics.alerts import compute_metric
from component_analytics.protocols import EventStore
from component_analytics.schemas import (
    Alert,
    AlertMetric,
    ComponentHealth,
    DailyAggregate,
    ErrorGroup,
    ErrorGroupStatus,
    ErrorPriority,
    Event,
    EventType,
    HealthState,
    HourlyAggregate,
    RollupBucket,
    RollupGranularity,
    TopEvent,
)

logger = logging.getLogger(__name__)

ACTIVE_SESSION_WINDOW = timedelta(minutes=30)

# Health thresholds over the most recent hour
DEGRADED_ERROR_RATE = 0.02
UNHEALTHY_ERROR_RATE = 0.10
DEGRADED_P95_MS = 1000.0
UNHEALTHY_P95_MS = 3000.0


def classify_health(error_rate: Optional[float], p95_render_time: Optional[float]) -> HealthState:
    """Map recent error rate and p95 render time onto a health state."""
    if error_rate is None and p95_render_time is None:
        return HealthState.UNKNOWN
    rate = error_rate or 0.0
    p95 = p95_render_time or 0.0
    if rate >= UNHEALTHY_ERROR_RATE or p95 >= UNHEALTHY_P95_MS:
        return HealthState.UNHEALTHY
    if rate >= DEGRADED_ERROR_RATE or p95 >= DEGRADED_P95_MS:
        return HealthState.DEGRADED
    return HealthState.HEALTHY


class AnalyticsQueries:
    """Dashboard-facing reads. All methods propagate StoreUnavailableError."""

    def __init__(self, store: EventStore):
        self.store = store

    async def hourly(
        self, component_id: str, start: datetime, end: datetime
    ) -> List[HourlyAggregate]:
        return await self.store.query_hourly_aggregates(component_id, start, end)

    async def daily(self, component_id: str, start: date, end: date) -> List[DailyAggregate]:
        return await self.store.query_daily_aggregates(component_id, start, end)

    async def rollups(
        self,
        component_id: str,
        start: date,
        end: date,
        granularity: RollupGranularity = RollupGranularity.DAY,
    ) -> List[RollupBucket]:
        """Daily rows in [start, end] re-bucketed by day, week or month."""
        dailies = await self.store.query_daily_aggregates(component_id, start, end)
        return rollup_by_granularity(dailies, granularity)

    async def error_groups(
        self,
        component_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        limit: int = 100,
    ) -> List[ErrorGroup]:
        return await self.store.list_error_groups(component_id, status, priority, limit)

    async def events(
        self,
        component_id: str,
        start: datetime,
        end: datetime,
        event_types: Optional[Sequence[EventType]] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        return await self.store.query_events(component_id, start, end, event_types, limit)

    async def top_events(
        self, component_id: str, start: datetime, end: datetime, limit: int = 10
    ) -> List[TopEvent]:
        """Most frequent (event_type, event_name) pairs in the range."""
        events = await self.store.query_events(component_id, start, end)
        counts = Counter((e.event_type, e.event_name) for e in events)
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0][0].value, item[0][1]))
        return [
            TopEvent(event_type=event_type, event_name=name, count=count)
            for (event_type, name), count in ranked[:limit]
        ]

    async def active_sessions(self, component_id: str, now: Optional[datetime] = None) -> int:
        """Distinct sessions seen in the last 30 minutes."""
        now = now or datetime.now(timezone.utc)
        events = await self.store.query_events(component_id, now - ACTIVE_SESSION_WINDOW, now)
        return len({e.session_id for e in events if e.session_id})

    async def component_health(
        self, component_id: str, now: Optional[datetime] = None
    ) -> ComponentHealth:
        """
        Health from the last hour of raw events.

        A component with no events in the last hour is `unknown`.
        """
        now = now or datetime.now(timezone.utc)
        events = await self.store.query_events(component_id, now - timedelta(hours=1), now)

        render_times = sorted(
            e.duration_ms
            for e in events
            if e.event_type == EventType.RENDER and e.duration_ms is not None
        )
        error_rate = compute_metric(AlertMetric.ERROR_RATE, events)
        p95 = percentile(render_times, 95)

        return ComponentHealth(
            component_id=component_id,
            status=classify_health(error_rate, p95),
            error_rate=error_rate,
            p95_render_time=p95,
            error_count_last_hour=sum(1 for e in events if e.event_type == EventType.ERROR),
            checked_at=now,
        )

    async def open_alerts(self, component_id: Optional[str] = None) -> List[Alert]:
        return await self.store.list_open_alerts(component_id)
