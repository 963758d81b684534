"""
In-process event store.

Used when no database DSN is configured and throughout the test suite. Every
read-modify-write runs under one asyncio lock, which gives the same atomicity
the PostgreSQL backend gets from ON CONFLICT clauses.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from component_analytics.exceptions import StoreUnavailableError
from component_analytics.schemas import (
    OPEN_ALERT_STATUSES,
    Alert,
    AlertMetric,
    AlertRule,
    AlertStatus,
    DailyAggregate,
    ErrorGroup,
    ErrorGroupStatus,
    ErrorPriority,
    ErrorRecord,
    Event,
    EventType,
    HourlyAggregate,
    PerformanceBaseline,
)

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str]
AggregateKey = Tuple[str, Optional[str], object]
BaselineKey = Tuple[str, Optional[str], AlertMetric]


class InMemoryEventStore:
    """Dictionary-backed EventStore."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._available = True

        self._events: Dict[str, Event] = {}
        self._error_records: Dict[str, ErrorRecord] = {}
        self._hourly: Dict[AggregateKey, HourlyAggregate] = {}
        self._daily: Dict[AggregateKey, DailyAggregate] = {}

        self._groups: Dict[GroupKey, ErrorGroup] = {}
        self._group_sites: Dict[GroupKey, Set[str]] = {}
        self._group_sessions: Dict[GroupKey, Set[str]] = {}

        self._rules: Dict[str, AlertRule] = {}
        self._alerts: Dict[str, Alert] = {}
        self._baselines: Dict[BaselineKey, PerformanceBaseline] = {}

    def set_available(self, available: bool) -> None:
        """Simulate an outage: while unavailable every operation raises."""
        self._available = available
        logger.info(f"In-memory store {'available' if available else 'unavailable'}")

    def _check_available(self) -> None:
        if not self._available:
            raise StoreUnavailableError("In-memory store marked unavailable")

    # ------------------------------------------------------------------
    # Raw telemetry
    # ------------------------------------------------------------------

    async def insert_events(self, events: Sequence[Event]) -> None:
        async with self._lock:
            self._check_available()
            for event in events:
                self._events.setdefault(event.id, event)

    async def insert_error_records(self, records: Sequence[ErrorRecord]) -> None:
        async with self._lock:
            self._check_available()
            for record in records:
                self._error_records.setdefault(record.id, record)

    async def query_events(
        self,
        component_id: str,
        start: datetime,
        end: datetime,
        event_types: Optional[Sequence[EventType]] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        async with self._lock:
            self._check_available()
            wanted = set(event_types) if event_types else None
            matches = [
                event
                for event in self._events.values()
                if event.component_id == component_id
                and start <= event.created_at < end
                and (wanted is None or event.event_type in wanted)
            ]
        matches.sort(key=lambda e: e.created_at)
        return matches[:limit] if limit else matches

    async def list_active_components(self, start: datetime, end: datetime) -> List[str]:
        async with self._lock:
            self._check_available()
            return sorted(
                {e.component_id for e in self._events.values() if start <= e.created_at < end}
            )

    def list_error_records(self, component_id: str) -> List[ErrorRecord]:
        """Error occurrence rows for one component, oldest first."""
        records = [r for r in self._error_records.values() if r.component_id == component_id]
        return sorted(records, key=lambda r: r.occurred_at)

    # ------------------------------------------------------------------
    # Rollups
    # ------------------------------------------------------------------

    async def upsert_hourly_aggregates(self, aggregates: Sequence[HourlyAggregate]) -> None:
        async with self._lock:
            self._check_available()
            for agg in aggregates:
                self._hourly[(agg.component_id, agg.version_id, agg.hour_bucket)] = agg

    async def query_hourly_aggregates(
        self, component_id: str, start: datetime, end: datetime
    ) -> List[HourlyAggregate]:
        async with self._lock:
            self._check_available()
            rows = [
                agg
                for (cid, _, hour), agg in self._hourly.items()
                if cid == component_id and start <= hour < end
            ]
        return sorted(rows, key=lambda a: (a.hour_bucket, a.version_id or ""))

    async def upsert_daily_aggregates(self, aggregates: Sequence[DailyAggregate]) -> None:
        async with self._lock:
            self._check_available()
            for agg in aggregates:
                self._daily[(agg.component_id, agg.version_id, agg.date_bucket)] = agg

    async def query_daily_aggregates(
        self, component_id: str, start: date, end: date
    ) -> List[DailyAggregate]:
        async with self._lock:
            self._check_available()
            rows = [
                agg
                for (cid, _, day), agg in self._daily.items()
                if cid == component_id and start <= day <= end
            ]
        return sorted(rows, key=lambda a: (a.date_bucket, a.version_id or ""))

    # ------------------------------------------------------------------
    # Error groups
    # ------------------------------------------------------------------

    async def upsert_error_group(self, record: ErrorRecord) -> ErrorGroup:
        key = (record.component_id, record.fingerprint)
        async with self._lock:
            self._check_available()
            sites = self._group_sites.setdefault(key, set())
            sessions = self._group_sessions.setdefault(key, set())
            sites.add(record.site_id)
            if record.session_id:
                sessions.add(record.session_id)

            existing = self._groups.get(key)
            if existing is None:
                group = ErrorGroup(
                    id=str(uuid.uuid4()),
                    component_id=record.component_id,
                    fingerprint=record.fingerprint,
                    error_type=record.error_type,
                    error_name=record.error_name,
                    message=record.message,
                    sample_stack=record.stack,
                    occurrence_count=1,
                    affected_sites_count=len(sites),
                    affected_sessions_count=len(sessions),
                    first_seen=record.occurred_at,
                    last_seen=record.occurred_at,
                    affected_versions=[record.version_id] if record.version_id else [],
                )
            else:
                versions = list(existing.affected_versions)
                if record.version_id and record.version_id not in versions:
                    versions.append(record.version_id)
                status = existing.status
                if status == ErrorGroupStatus.RESOLVED:
                    status = ErrorGroupStatus.OPEN
                group = existing.model_copy(
                    update={
                        "occurrence_count": existing.occurrence_count + 1,
                        "affected_sites_count": len(sites),
                        "affected_sessions_count": len(sessions),
                        "first_seen": min(existing.first_seen, record.occurred_at),
                        "last_seen": max(existing.last_seen, record.occurred_at),
                        "affected_versions": versions,
                        "status": status,
                    }
                )
            self._groups[key] = group
            return group

    async def get_error_group(self, component_id: str, fingerprint: str) -> Optional[ErrorGroup]:
        async with self._lock:
            self._check_available()
            return self._groups.get((component_id, fingerprint))

    async def list_error_groups(
        self,
        component_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        limit: int = 100,
    ) -> List[ErrorGroup]:
        async with self._lock:
            self._check_available()
            groups = [
                g
                for g in self._groups.values()
                if g.component_id == component_id
                and (status is None or g.status == status)
                and (priority is None or g.priority == priority)
            ]
        groups.sort(key=lambda g: g.last_seen, reverse=True)
        return groups[:limit]

    async def update_error_group(
        self,
        group_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        assigned_to: Optional[str] = None,
        resolution_notes: Optional[str] = None,
    ) -> Optional[ErrorGroup]:
        changes = {
            "status": status,
            "priority": priority,
            "assigned_to": assigned_to,
            "resolution_notes": resolution_notes,
        }
        update = {k: v for k, v in changes.items() if v is not None}
        async with self._lock:
            self._check_available()
            for key, group in self._groups.items():
                if group.id == group_id:
                    updated = group.model_copy(update=update)
                    self._groups[key] = updated
                    return updated
        return None

    # ------------------------------------------------------------------
    # Alerting
    # ------------------------------------------------------------------

    def add_alert_rule(self, rule: AlertRule) -> None:
        """Register or replace an alert rule."""
        self._rules[rule.id] = rule

    def remove_alert_rule(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    async def list_enabled_alert_rules(self) -> List[AlertRule]:
        async with self._lock:
            self._check_available()
            return [rule for rule in self._rules.values() if rule.enabled]

    async def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        async with self._lock:
            self._check_available()
            return self._rules.get(rule_id)

    async def create_alert_if_absent(self, alert: Alert) -> Tuple[Alert, bool]:
        async with self._lock:
            self._check_available()
            for existing in self._alerts.values():
                if (
                    existing.component_id == alert.component_id
                    and existing.alert_type == alert.alert_type
                    and existing.metric == alert.metric
                    and existing.status in OPEN_ALERT_STATUSES
                ):
                    return existing, False
            self._alerts[alert.id] = alert
            return alert, True

    async def list_open_alerts(self, component_id: Optional[str] = None) -> List[Alert]:
        async with self._lock:
            self._check_available()
            alerts = [
                a
                for a in self._alerts.values()
                if a.status in OPEN_ALERT_STATUSES
                and (component_id is None or a.component_id == component_id)
            ]
        return sorted(alerts, key=lambda a: a.triggered_at)

    async def acknowledge_alert(self, alert_id: str, acknowledged_at: datetime) -> Optional[Alert]:
        """Mark an active alert acknowledged. It stays open."""
        async with self._lock:
            self._check_available()
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.ACTIVE:
                return alert
            updated = alert.model_copy(
                update={"status": AlertStatus.ACKNOWLEDGED, "acknowledged_at": acknowledged_at}
            )
            self._alerts[alert_id] = updated
            return updated

    async def resolve_alert(
        self, alert_id: str, resolved_at: datetime, auto_resolved: bool
    ) -> Optional[Alert]:
        async with self._lock:
            self._check_available()
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                return alert
            updated = alert.model_copy(
                update={
                    "status": AlertStatus.RESOLVED,
                    "resolved_at": resolved_at,
                    "auto_resolved": auto_resolved,
                }
            )
            self._alerts[alert_id] = updated
            return updated

    def list_alerts(self) -> List[Alert]:
        """Every alert regardless of status, oldest first."""
        return sorted(self._alerts.values(), key=lambda a: a.triggered_at)

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    async def get_baseline(
        self, component_id: str, version_id: Optional[str], metric: AlertMetric
    ) -> Optional[PerformanceBaseline]:
        async with self._lock:
            self._check_available()
            return self._baselines.get((component_id, version_id, metric))

    async def upsert_baselines(self, baselines: Sequence[PerformanceBaseline]) -> None:
        async with self._lock:
            self._check_available()
            for baseline in baselines:
                key = (baseline.component_id, baseline.version_id, baseline.metric)
                self._baselines[key] = baseline

    async def is_healthy(self) -> bool:
        return self._available
