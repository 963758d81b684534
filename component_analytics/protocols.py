"""
Protocols defining contracts between pipeline components.

The event store, the live-stream publisher and the email transport are all
collaborators owned elsewhere; these protocols state what each one promises so
that the collector, aggregator and evaluator can be tested against fakes.
"""

from datetime import date, datetime
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from component_analytics.schemas import (
    Alert,
    AlertMetric,
    AlertRule,
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


# ============================================================================
# STORAGE PROTOCOL - What event stores must provide
# ============================================================================


@runtime_checkable
class EventStore(Protocol):
    """Time-partitioned store for raw telemetry, rollups, error groups and alerts."""

    async def insert_events(self, events: Sequence[Event]) -> None:
        """
        Append raw events.

        Promises:
        - All-or-nothing for the batch
        - Duplicate event ids are ignored (at-least-once delivery)
        - Raises StoreUnavailableError on failure
        """
        ...

    async def insert_error_records(self, records: Sequence[ErrorRecord]) -> None:
        """
        Append error occurrence rows.

        Promises:
        - All-or-nothing for the batch
        - Raises StoreUnavailableError on failure
        """
        ...

    async def query_events(
        self,
        component_id: str,
        start: datetime,
        end: datetime,
        event_types: Optional[Sequence[EventType]] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """
        Range query over raw events.

        Promises:
        - Returns events with start <= created_at < end
        - Ordered by created_at ascending
        - Only committed events are visible
        """
        ...

    async def list_active_components(self, start: datetime, end: datetime) -> List[str]:
        """
        Component ids that emitted at least one event in [start, end).

        Promises:
        - Sorted, no duplicates
        """
        ...

    async def upsert_hourly_aggregates(self, aggregates: Sequence[HourlyAggregate]) -> None:
        """
        Store hourly rollups.

        Promises:
        - Keyed by (component_id, version_id, hour_bucket)
        - Replaces every column of an existing row (never increments)
        """
        ...

    async def query_hourly_aggregates(
        self, component_id: str, start: datetime, end: datetime
    ) -> List[HourlyAggregate]:
        """
        Hourly rollups with start <= hour_bucket < end, all versions.

        Promises:
        - Ordered by hour_bucket ascending
        """
        ...

    async def upsert_daily_aggregates(self, aggregates: Sequence[DailyAggregate]) -> None:
        """
        Store daily rollups.

        Promises:
        - Keyed by (component_id, version_id, date_bucket)
        - Replaces every column of an existing row
        """
        ...

    async def query_daily_aggregates(
        self, component_id: str, start: date, end: date
    ) -> List[DailyAggregate]:
        """
        Daily rollups with start <= date_bucket <= end, all versions.

        Promises:
        - Ordered by date_bucket ascending
        """
        ...

    async def upsert_error_group(self, record: ErrorRecord) -> ErrorGroup:
        """
        Merge one occurrence into its group.

        Promises:
        - Creates the group with occurrence_count=1 on first sight
        - Otherwise increments occurrence_count, advances last_seen, unions the
          version/site/session sets, and flips status resolved -> open
        - Atomic with respect to concurrent occurrences of the same fingerprint
        - Returns the group as stored after the merge
        """
        ...

    async def get_error_group(self, component_id: str, fingerprint: str) -> Optional[ErrorGroup]:
        """Look up one group by its unique key."""
        ...

    async def list_error_groups(
        self,
        component_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        limit: int = 100,
    ) -> List[ErrorGroup]:
        """
        Filter groups for one component.

        Promises:
        - Ordered by last_seen descending
        """
        ...

    async def update_error_group(
        self,
        group_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        assigned_to: Optional[str] = None,
        resolution_notes: Optional[str] = None,
    ) -> Optional[ErrorGroup]:
        """Apply a triage change. Returns None when the group does not exist."""
        ...

    async def list_enabled_alert_rules(self) -> List[AlertRule]:
        """All rules with enabled=True."""
        ...

    async def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        """One rule by id, enabled or not."""
        ...

    async def create_alert_if_absent(self, alert: Alert) -> Tuple[Alert, bool]:
        """
        Insert an alert unless one is already open for its key.

        Promises:
        - Key is (component_id, alert_type, metric); open means active or acknowledged
        - Returns (stored alert, True) on insert, (existing alert, False) otherwise
        - Atomic: concurrent callers never produce two open alerts for one key
        """
        ...

    async def list_open_alerts(self, component_id: Optional[str] = None) -> List[Alert]:
        """Alerts in status active or acknowledged."""
        ...

    async def resolve_alert(
        self, alert_id: str, resolved_at: datetime, auto_resolved: bool
    ) -> Optional[Alert]:
        """Transition an open alert to resolved. No-op for already resolved alerts."""
        ...

    async def get_baseline(
        self, component_id: str, version_id: Optional[str], metric: AlertMetric
    ) -> Optional[PerformanceBaseline]:
        """Latest baseline for the key, if computed."""
        ...

    async def upsert_baselines(self, baselines: Sequence[PerformanceBaseline]) -> None:
        """Replace baselines keyed by (component_id, version_id, metric)."""
        ...

    async def is_healthy(self) -> bool:
        """
        Check store health.

        Promises:
        - Never raises exceptions
        """
        ...


# ============================================================================
# DELIVERY PROTOCOLS
# ============================================================================


@runtime_checkable
class EventPublisher(Protocol):
    """Receives events after they are committed to the store."""

    def publish(self, events: Sequence[Event]) -> None:
        """
        Fan out committed events.

        Promises:
        - Never blocks
        - Never raises exceptions
        """
        ...


@runtime_checkable
class EmailSender(Protocol):
    """Outbound email transport owned by the host platform."""

    async def send(self, recipients: Sequence[str], subject: str, body: dict) -> None:
        """Send one message. May raise on delivery failure."""
        ...
