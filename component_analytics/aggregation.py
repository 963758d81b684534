"""
Time-bucketed rollups.

Hourly aggregates are computed from raw events, daily aggregates only from
hourly rows. The compute functions are pure: the same inputs always produce the
same rows (ids included), so rerunning a window and upserting the result is
idempotent and late events are absorbed by simply recomputing.
"""

import logging
import math
import statistics
import uuid
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from component_analytics.base import PeriodicTask
from component_analytics.config import AggregationSettings
from component_analytics.protocols import EventStore
from component_analytics.schemas import (
    AlertMetric,
    DailyAggregate,
    Event,
    EventType,
    HourlyAggregate,
    HourlyDataPoint,
    PerformanceBaseline,
    RollupBucket,
    RollupGranularity,
    TaskStats,
)
from component_analytics.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

API_SUCCESS_NAMES = frozenset({"success", "api_success", "api_call_success"})
API_ERROR_NAMES = frozenset({"error", "api_error", "api_call_error"})

BASELINE_METRICS = (
    AlertMetric.AVG_RENDER_TIME,
    AlertMetric.ERROR_RATE,
    AlertMetric.ERROR_COUNT,
    AlertMetric.RENDER_COUNT,
)

_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "component-analytics")


# ============================================================================
# PURE COMPUTATION
# ============================================================================


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """
    Nearest-rank percentile.

    Args:
        sorted_values: Values in ascending order
        p: Percentile in [0, 100]

    Returns:
        values[max(0, ceil(p/100 * n) - 1)], or None for empty input
    """
    n = len(sorted_values)
    if n == 0:
        return None
    index = max(0, math.ceil(p / 100 * n) - 1)
    return sorted_values[min(index, n - 1)]


def hour_floor(moment: datetime) -> datetime:
    """Truncate to the start of the hour, normalized to UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def aggregate_id(component_id: str, version_id: Optional[str], bucket: object) -> str:
    """Deterministic row id derived from the rollup's unique key."""
    key = f"{component_id}|{version_id or ''}|{bucket.isoformat()}"
    return str(uuid.uuid5(_ID_NAMESPACE, key))


def _mean(values: Sequence[float]) -> Optional[float]:
    return round(sum(values) / len(values), 2) if values else None


def _weighted_mean(pairs: Iterable[tuple]) -> Optional[float]:
    """Mean of (value, weight) pairs, skipping missing values. None when weight is 0."""
    total = 0.0
    weight = 0
    for value, w in pairs:
        if value is None or not w:
            continue
        total += value * w
        weight += w
    return round(total / weight, 2) if weight else None


def _sorted_counts(counter: Counter) -> Dict[str, int]:
    return dict(sorted(counter.items()))


def _merge_counts(maps: Iterable[Dict[str, int]]) -> Dict[str, int]:
    merged: Counter = Counter()
    for mapping in maps:
        merged.update(mapping)
    return _sorted_counts(merged)


def _version_sort_key(version_id: Optional[str]) -> tuple:
    return (version_id is not None, version_id or "")


def compute_hourly_aggregates(
    component_id: str, hour_start: datetime, events: Iterable[Event]
) -> List[HourlyAggregate]:
    """
    Roll one hour of raw events up into one aggregate per version.

    Events for other components or outside [hour_start, hour_start + 1h) are
    ignored. An hour without events yields no rows.

    Args:
        component_id: Component being rolled up
        hour_start: Start of the hour bucket
        events: Raw events, in any order

    Returns:
        Aggregates ordered by version (unversioned first)
    """
    hour_start = hour_floor(hour_start)
    hour_end = hour_start + HOUR

    by_version: Dict[Optional[str], List[Event]] = defaultdict(list)
    for event in events:
        if event.component_id == component_id and hour_start <= event.created_at < hour_end:
            by_version[event.version_id].append(event)

    aggregates = []
    for version_id in sorted(by_version, key=_version_sort_key):
        aggregates.append(
            _hourly_for_version(component_id, version_id, hour_start, by_version[version_id])
        )
    return aggregates


def _hourly_for_version(
    component_id: str, version_id: Optional[str], hour_start: datetime, events: List[Event]
) -> HourlyAggregate:
    renders = [e for e in events if e.event_type == EventType.RENDER]
    api_calls = [e for e in events if e.event_type == EventType.API_CALL]
    errors = [e for e in events if e.event_type == EventType.ERROR]
    interactions = [e for e in events if e.event_type == EventType.USER_INTERACTION]

    render_times = sorted(e.duration_ms for e in renders if e.duration_ms is not None)
    api_latencies = [e.duration_ms for e in api_calls if e.duration_ms is not None]
    memory = [e.memory_kb for e in events if e.memory_kb is not None]

    return HourlyAggregate(
        id=aggregate_id(component_id, version_id, hour_start),
        component_id=component_id,
        version_id=version_id,
        hour_bucket=hour_start,
        total_renders=len(renders),
        unique_sites=len({e.site_id for e in events}),
        unique_sessions=len({e.session_id for e in events if e.session_id}),
        avg_render_time=_mean(render_times),
        p50_render_time=percentile(render_times, 50),
        p95_render_time=percentile(render_times, 95),
        p99_render_time=percentile(render_times, 99),
        max_render_time=render_times[-1] if render_times else None,
        total_api_calls=len(api_calls),
        api_success_count=sum(1 for e in api_calls if e.event_name in API_SUCCESS_NAMES),
        api_error_count=sum(1 for e in api_calls if e.event_name in API_ERROR_NAMES),
        avg_api_latency=_mean(api_latencies),
        total_errors=len(errors),
        error_breakdown=_sorted_counts(Counter(e.event_name for e in errors)),
        total_interactions=len(interactions),
        interaction_breakdown=_sorted_counts(Counter(e.event_name for e in interactions)),
        country_breakdown=_sorted_counts(Counter(e.country_code for e in events if e.country_code)),
        memory_min_kb=min(memory) if memory else None,
        memory_avg_kb=_mean(memory),
        memory_max_kb=max(memory) if memory else None,
        memory_samples=len(memory),
    )


def compute_daily_aggregate(
    component_id: str,
    version_id: Optional[str],
    day: date,
    hourlies: Sequence[HourlyAggregate],
) -> DailyAggregate:
    """
    Roll a day's hourly rows for one version up into a daily row.

    Sums additive counts; unique sites and sessions take the max hourly value
    (distinct sets are not kept per hour). Average render time is weighted by
    render count, daily p95 is the max of hourly p95s.

    Args:
        component_id: Component being rolled up
        version_id: Version the hourly rows belong to
        day: UTC date of the bucket
        hourlies: Hourly rows for that day and version

    Returns:
        Daily aggregate with all 24 hourly data points
    """
    total_renders = sum(h.total_renders for h in hourlies)
    total_api_calls = sum(h.total_api_calls for h in hourlies)
    api_success_count = sum(h.api_success_count for h in hourlies)
    total_errors = sum(h.total_errors for h in hourlies)

    p95s = [h.p95_render_time for h in hourlies if h.p95_render_time is not None]
    maxes = [h.max_render_time for h in hourlies if h.max_render_time is not None]
    mem_mins = [h.memory_min_kb for h in hourlies if h.memory_min_kb is not None]
    mem_maxes = [h.memory_max_kb for h in hourlies if h.memory_max_kb is not None]

    by_hour = {h.hour_bucket.astimezone(timezone.utc).hour: h for h in hourlies}
    hourly_data = []
    for hour in range(24):
        row = by_hour.get(hour)
        hourly_data.append(
            HourlyDataPoint(
                hour=hour,
                renders=row.total_renders if row else 0,
                errors=row.total_errors if row else 0,
                avg_render_time=row.avg_render_time if row else None,
            )
        )

    return DailyAggregate(
        id=aggregate_id(component_id, version_id, day),
        component_id=component_id,
        version_id=version_id,
        date_bucket=day,
        total_renders=total_renders,
        unique_sites=max((h.unique_sites for h in hourlies), default=0),
        unique_sessions=max((h.unique_sessions for h in hourlies), default=0),
        avg_render_time=_weighted_mean((h.avg_render_time, h.total_renders) for h in hourlies),
        p95_render_time=max(p95s) if p95s else None,
        max_render_time=max(maxes) if maxes else None,
        total_api_calls=total_api_calls,
        api_success_count=api_success_count,
        api_error_count=sum(h.api_error_count for h in hourlies),
        avg_api_latency=_weighted_mean((h.avg_api_latency, h.total_api_calls) for h in hourlies),
        api_success_rate=api_success_count / total_api_calls if total_api_calls else 1.0,
        total_errors=total_errors,
        error_rate=total_errors / total_renders if total_renders else 0.0,
        error_breakdown=_merge_counts(h.error_breakdown for h in hourlies),
        total_interactions=sum(h.total_interactions for h in hourlies),
        interaction_breakdown=_merge_counts(h.interaction_breakdown for h in hourlies),
        country_breakdown=_merge_counts(h.country_breakdown for h in hourlies),
        memory_min_kb=min(mem_mins) if mem_mins else None,
        memory_avg_kb=_weighted_mean((h.memory_avg_kb, h.memory_samples) for h in hourlies),
        memory_max_kb=max(mem_maxes) if mem_maxes else None,
        hourly_data=hourly_data,
    )


def hourly_metric_value(metric: AlertMetric, hourlies: Sequence[HourlyAggregate]) -> Optional[float]:
    """Value of an alert metric for one hour, merging rows across versions."""
    renders = sum(h.total_renders for h in hourlies)
    errors = sum(h.total_errors for h in hourlies)
    if metric == AlertMetric.RENDER_COUNT:
        return float(renders)
    if metric == AlertMetric.ERROR_COUNT:
        return float(errors)
    if metric == AlertMetric.ERROR_RATE:
        return errors / renders if renders else 0.0
    if metric == AlertMetric.AVG_RENDER_TIME:
        return _weighted_mean((h.avg_render_time, h.total_renders) for h in hourlies)
    raise ValueError(f"Unsupported metric: {metric}")


def compute_baseline(
    component_id: str,
    version_id: Optional[str],
    metric: AlertMetric,
    values: Sequence[float],
    window_start: datetime,
    window_end: datetime,
    computed_at: datetime,
) -> Optional[PerformanceBaseline]:
    """Rolling statistics over hourly samples. None without samples."""
    if not values:
        return None
    ordered = sorted(values)
    return PerformanceBaseline(
        component_id=component_id,
        version_id=version_id,
        metric=metric,
        mean=statistics.fmean(ordered),
        stddev=statistics.pstdev(ordered) if len(ordered) > 1 else 0.0,
        p50=percentile(ordered, 50),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
        sample_count=len(ordered),
        window_start=window_start,
        window_end=window_end,
        computed_at=computed_at,
    )


def _period_start(day: date, granularity: RollupGranularity) -> date:
    if granularity == RollupGranularity.WEEK:
        return day - timedelta(days=day.weekday())
    if granularity == RollupGranularity.MONTH:
        return day.replace(day=1)
    return day


def rollup_by_granularity(
    dailies: Iterable[DailyAggregate], granularity: RollupGranularity
) -> List[RollupBucket]:
    """
    Re-bucket daily rows (all versions) into day, week or month buckets.

    Weeks start on Monday. Average render time is weighted by renders.
    """
    granularity = RollupGranularity(granularity)
    buckets: Dict[date, List[DailyAggregate]] = defaultdict(list)
    for daily in dailies:
        buckets[_period_start(daily.date_bucket, granularity)].append(daily)

    result = []
    for start in sorted(buckets):
        rows = buckets[start]
        renders = sum(r.total_renders for r in rows)
        errors = sum(r.total_errors for r in rows)
        api_calls = sum(r.total_api_calls for r in rows)
        api_success = sum(r.api_success_count for r in rows)
        result.append(
            RollupBucket(
                period_start=start,
                granularity=granularity,
                total_renders=renders,
                unique_sites=max(r.unique_sites for r in rows),
                avg_render_time=_weighted_mean((r.avg_render_time, r.total_renders) for r in rows),
                total_errors=errors,
                error_rate=errors / renders if renders else 0.0,
                total_api_calls=api_calls,
                api_success_rate=api_success / api_calls if api_calls else 1.0,
                total_interactions=sum(r.total_interactions for r in rows),
            )
        )
    return result


# ============================================================================
# STORE-DRIVEN AGGREGATION
# ============================================================================


class Aggregator:
    """Loads raw data from the store, computes rollups, and upserts them."""

    def __init__(
        self,
        store: EventStore,
        late_event_lookback_hours: int = 1,
        baseline_days: int = 7,
    ):
        self.store = store
        self.late_event_lookback_hours = late_event_lookback_hours
        self.baseline_days = baseline_days

    @classmethod
    def from_config(cls, store: EventStore, settings: AggregationSettings) -> "Aggregator":
        return cls(
            store,
            late_event_lookback_hours=settings.late_event_lookback_hours,
            baseline_days=settings.baseline_days,
        )

    async def aggregate_hour(self, component_id: str, hour_start: datetime) -> List[HourlyAggregate]:
        """Recompute and replace every version's rollup for one hour."""
        hour_start = hour_floor(hour_start)
        events = await self.store.query_events(component_id, hour_start, hour_start + HOUR)
        aggregates = compute_hourly_aggregates(component_id, hour_start, events)
        await self.store.upsert_hourly_aggregates(aggregates)
        logger.debug(
            f"Aggregated {len(events)} events into {len(aggregates)} hourly rows for "
            f"{sanitize_for_log(component_id)} at {hour_start.isoformat()}"
        )
        return aggregates

    async def aggregate_day(self, component_id: str, day: date) -> List[DailyAggregate]:
        """Recompute and replace every version's rollup for one UTC day."""
        start = day_start(day)
        hourlies = await self.store.query_hourly_aggregates(component_id, start, start + DAY)

        by_version: Dict[Optional[str], List[HourlyAggregate]] = defaultdict(list)
        for row in hourlies:
            by_version[row.version_id].append(row)

        dailies = [
            compute_daily_aggregate(component_id, version_id, day, by_version[version_id])
            for version_id in sorted(by_version, key=_version_sort_key)
        ]
        await self.store.upsert_daily_aggregates(dailies)
        logger.debug(
            f"Aggregated {len(hourlies)} hourly rows into {len(dailies)} daily rows for "
            f"{sanitize_for_log(component_id)} on {day.isoformat()}"
        )
        return dailies

    async def run_hourly(self, now: Optional[datetime] = None) -> int:
        """
        Recompute the last completed hour plus the late-event lookback window.

        Args:
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            Number of hourly rows written

        Raises:
            StoreUnavailableError: The store failed; the cycle is abandoned
        """
        last_complete = hour_floor(now or datetime.now(timezone.utc)) - HOUR
        hours = [
            last_complete - HOUR * k for k in range(self.late_event_lookback_hours, -1, -1)
        ]
        components = await self.store.list_active_components(hours[0], last_complete + HOUR)

        written = 0
        for component_id in components:
            for hour in hours:
                written += len(await self.aggregate_hour(component_id, hour))

        logger.info(
            f"Hourly aggregation: {len(components)} components, {len(hours)} hours, "
            f"{written} rows"
        )
        return written

    async def run_daily(self, now: Optional[datetime] = None) -> int:
        """
        Roll up the previous UTC day for every component active that day.

        Returns:
            Number of daily rows written
        """
        today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
        day = today - timedelta(days=1)
        start = day_start(day)
        components = await self.store.list_active_components(start, start + DAY)

        written = 0
        for component_id in components:
            written += len(await self.aggregate_day(component_id, day))

        logger.info(f"Daily aggregation for {day.isoformat()}: {written} rows")
        return written

    async def refresh_baselines(
        self, component_id: str, now: Optional[datetime] = None
    ) -> List[PerformanceBaseline]:
        """
        Recompute baselines from the last `baseline_days` of hourly rows.

        One baseline per metric is computed component-wide (stored with
        version_id None) and one per explicit version.
        """
        now = now or datetime.now(timezone.utc)
        window_end = hour_floor(now)
        window_start = window_end - timedelta(days=self.baseline_days)
        hourlies = await self.store.query_hourly_aggregates(component_id, window_start, window_end)

        all_hours: Dict[datetime, List[HourlyAggregate]] = defaultdict(list)
        per_version: Dict[str, Dict[datetime, List[HourlyAggregate]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for row in hourlies:
            all_hours[row.hour_bucket].append(row)
            if row.version_id is not None:
                per_version[row.version_id][row.hour_bucket].append(row)

        series = [(None, all_hours)] + [(v, per_version[v]) for v in sorted(per_version)]

        baselines = []
        for version_id, hours in series:
            for metric in BASELINE_METRICS:
                values = [hourly_metric_value(metric, rows) for rows in hours.values()]
                baseline = compute_baseline(
                    component_id,
                    version_id,
                    metric,
                    [v for v in values if v is not None],
                    window_start,
                    window_end,
                    now,
                )
                if baseline:
                    baselines.append(baseline)

        await self.store.upsert_baselines(baselines)
        logger.debug(
            f"Refreshed {len(baselines)} baselines for {sanitize_for_log(component_id)}"
        )
        return baselines

    async def refresh_all_baselines(self, now: Optional[datetime] = None) -> int:
        """Refresh baselines for every component active in the baseline window."""
        now = now or datetime.now(timezone.utc)
        window_end = hour_floor(now)
        components = await self.store.list_active_components(
            window_end - timedelta(days=self.baseline_days), window_end
        )
        count = 0
        for component_id in components:
            count += len(await self.refresh_baselines(component_id, now))
        logger.info(f"Refreshed {count} baselines across {len(components)} components")
        return count


# ============================================================================
# SCHEDULING
# ============================================================================


class _AggregationJob(PeriodicTask):
    def __init__(self, name: str, interval_seconds: float, job):
        super().__init__(name, interval_seconds)
        self._job = job

    async def run_once(self) -> None:
        await self._job()


class AggregationScheduler:
    """Runs hourly, daily and baseline jobs as independent periodic tasks."""

    def __init__(self, aggregator: Aggregator, settings: Optional[AggregationSettings] = None):
        settings = settings or AggregationSettings()
        self.aggregator = aggregator
        self.tasks = [
            _AggregationJob(
                "hourly-aggregation", settings.hourly_interval_seconds, aggregator.run_hourly
            ),
            _AggregationJob(
                "daily-aggregation", settings.daily_interval_seconds, aggregator.run_daily
            ),
            _AggregationJob(
                "baseline-refresh",
                settings.baseline_interval_seconds,
                aggregator.refresh_all_baselines,
            ),
        ]

    async def start(self) -> None:
        for task in self.tasks:
            await task.start()

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()

    def get_stats(self) -> List[TaskStats]:
        return [task.get_stats() for task in self.tasks]
