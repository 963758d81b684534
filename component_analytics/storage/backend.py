"""
PostgreSQL storage backend for component analytics.

Raw events and error occurrences are append-only tables keyed by id, so replayed
batches are ignored. Rollups, baselines and error groups are written with
INSERT ... ON CONFLICT so every write is idempotent or atomically merged, and a
partial unique index keeps at most one open alert per (component, type, metric).
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import asyncpg
from pydantic import BaseModel

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

# Resolved at import time so that patching the asyncpg module in tests leaves
# error classification intact.
_DRIVER_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS component_events (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL,
    version_id TEXT,
    site_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_name TEXT NOT NULL,
    category TEXT,
    payload JSONB NOT NULL DEFAULT '{}',
    metadata JSONB NOT NULL DEFAULT '{}',
    duration_ms DOUBLE PRECISION,
    memory_kb DOUBLE PRECISION,
    page_path TEXT,
    session_id TEXT,
    country_code CHAR(2),
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_component_events_component_time
    ON component_events (component_id, created_at);
CREATE INDEX IF NOT EXISTS idx_component_events_time
    ON component_events (created_at);

CREATE TABLE IF NOT EXISTS component_errors (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL,
    site_id TEXT NOT NULL,
    version_id TEXT,
    fingerprint CHAR(32) NOT NULL,
    error_type TEXT NOT NULL,
    error_name TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    stack TEXT,
    source_file TEXT,
    source_line INTEGER,
    source_column INTEGER,
    browser TEXT,
    os TEXT,
    device_type TEXT,
    page_path TEXT,
    session_id TEXT,
    ip_hash TEXT,
    component_state JSONB NOT NULL DEFAULT '{}',
    props_snapshot JSONB NOT NULL DEFAULT '{}',
    occurred_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_component_errors_fingerprint
    ON component_errors (component_id, fingerprint, occurred_at);

CREATE TABLE IF NOT EXISTS component_error_groups (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL,
    fingerprint CHAR(32) NOT NULL,
    error_type TEXT NOT NULL,
    error_name TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    sample_stack TEXT,
    occurrence_count INTEGER NOT NULL,
    affected_site_ids TEXT[] NOT NULL DEFAULT '{}',
    affected_session_ids TEXT[] NOT NULL DEFAULT '{}',
    affected_versions TEXT[] NOT NULL DEFAULT '{}',
    first_seen TIMESTAMPTZ NOT NULL,
    last_seen TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    priority TEXT NOT NULL DEFAULT 'medium',
    assigned_to TEXT,
    resolution_notes TEXT,
    UNIQUE (component_id, fingerprint)
);

CREATE TABLE IF NOT EXISTS component_hourly_aggregates (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL,
    version_id TEXT,
    hour_bucket TIMESTAMPTZ NOT NULL,
    total_renders INTEGER NOT NULL,
    unique_sites INTEGER NOT NULL,
    unique_sessions INTEGER NOT NULL,
    avg_render_time DOUBLE PRECISION,
    p50_render_time DOUBLE PRECISION,
    p95_render_time DOUBLE PRECISION,
    p99_render_time DOUBLE PRECISION,
    max_render_time DOUBLE PRECISION,
    total_api_calls INTEGER NOT NULL,
    api_success_count INTEGER NOT NULL,
    api_error_count INTEGER NOT NULL,
    avg_api_latency DOUBLE PRECISION,
    total_errors INTEGER NOT NULL,
    error_breakdown JSONB NOT NULL DEFAULT '{}',
    total_interactions INTEGER NOT NULL,
    interaction_breakdown JSONB NOT NULL DEFAULT '{}',
    country_breakdown JSONB NOT NULL DEFAULT '{}',
    memory_min_kb DOUBLE PRECISION,
    memory_avg_kb DOUBLE PRECISION,
    memory_max_kb DOUBLE PRECISION,
    memory_samples INTEGER NOT NULL DEFAULT 0,
    UNIQUE NULLS NOT DISTINCT (component_id, version_id, hour_bucket)
);

CREATE TABLE IF NOT EXISTS component_daily_aggregates (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL,
    version_id TEXT,
    date_bucket DATE NOT NULL,
    total_renders INTEGER NOT NULL,
    unique_sites INTEGER NOT NULL,
    unique_sessions INTEGER NOT NULL,
    avg_render_time DOUBLE PRECISION,
    p95_render_time DOUBLE PRECISION,
    max_render_time DOUBLE PRECISION,
    total_api_calls INTEGER NOT NULL,
    api_success_count INTEGER NOT NULL,
    api_error_count INTEGER NOT NULL,
    avg_api_latency DOUBLE PRECISION,
    api_success_rate DOUBLE PRECISION NOT NULL,
    total_errors INTEGER NOT NULL,
    error_rate DOUBLE PRECISION NOT NULL,
    error_breakdown JSONB NOT NULL DEFAULT '{}',
    total_interactions INTEGER NOT NULL,
    interaction_breakdown JSONB NOT NULL DEFAULT '{}',
    country_breakdown JSONB NOT NULL DEFAULT '{}',
    memory_min_kb DOUBLE PRECISION,
    memory_avg_kb DOUBLE PRECISION,
    memory_max_kb DOUBLE PRECISION,
    hourly_data JSONB NOT NULL DEFAULT '[]',
    UNIQUE NULLS NOT DISTINCT (component_id, version_id, date_bucket)
);

CREATE TABLE IF NOT EXISTS component_baselines (
    component_id TEXT NOT NULL,
    version_id TEXT,
    metric TEXT NOT NULL,
    mean DOUBLE PRECISION NOT NULL,
    stddev DOUBLE PRECISION NOT NULL,
    p50 DOUBLE PRECISION NOT NULL,
    p95 DOUBLE PRECISION NOT NULL,
    p99 DOUBLE PRECISION NOT NULL,
    sample_count INTEGER NOT NULL,
    window_start TIMESTAMPTZ NOT NULL,
    window_end TIMESTAMPTZ NOT NULL,
    computed_at TIMESTAMPTZ NOT NULL,
    UNIQUE NULLS NOT DISTINCT (component_id, version_id, metric)
);

CREATE TABLE IF NOT EXISTS component_alert_rules (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    alert_type TEXT NOT NULL,
    metric TEXT NOT NULL,
    condition TEXT NOT NULL,
    threshold DOUBLE PRECISION NOT NULL,
    window_minutes INTEGER NOT NULL DEFAULT 60,
    severity TEXT NOT NULL DEFAULT 'warning',
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    notify_emails TEXT[] NOT NULL DEFAULT '{}',
    webhook_url TEXT
);

CREATE TABLE IF NOT EXISTS component_alerts (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    component_id TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    metric TEXT NOT NULL,
    severity TEXT NOT NULL,
    current_value DOUBLE PRECISION NOT NULL,
    expected_value DOUBLE PRECISION,
    threshold_value DOUBLE PRECISION NOT NULL,
    affected_sites INTEGER NOT NULL DEFAULT 0,
    affected_sessions INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    auto_resolved BOOLEAN NOT NULL DEFAULT FALSE,
    message TEXT NOT NULL DEFAULT '',
    triggered_at TIMESTAMPTZ NOT NULL,
    acknowledged_at TIMESTAMPTZ,
    resolved_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_component_alerts_open
    ON component_alerts (component_id, alert_type, metric)
    WHERE status IN ('active', 'acknowledged');
"""

EVENT_COLUMNS = tuple(Event.model_fields)
ERROR_RECORD_COLUMNS = tuple(ErrorRecord.model_fields)
HOURLY_COLUMNS = tuple(HourlyAggregate.model_fields)
DAILY_COLUMNS = tuple(DailyAggregate.model_fields)
BASELINE_COLUMNS = tuple(PerformanceBaseline.model_fields)
ALERT_COLUMNS = tuple(Alert.model_fields)

_OPEN_STATUS_SQL = ", ".join(f"'{s.value}'" for s in OPEN_ALERT_STATUSES)

_GROUP_RETURNING = """
    RETURNING id, component_id, fingerprint, error_type, error_name, message,
        sample_stack, occurrence_count, affected_versions, first_seen, last_seen,
        status, priority, assigned_to, resolution_notes,
        cardinality(affected_site_ids) AS affected_sites_count,
        cardinality(affected_session_ids) AS affected_sessions_count
"""


def _insert_sql(table: str, columns: Sequence[str], conflict: str) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) {conflict}"


def _upsert_sql(table: str, columns: Sequence[str], key: Sequence[str]) -> str:
    """INSERT that replaces every non-key column of an existing row."""
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in key and c != "id")
    return _insert_sql(
        table, columns, f"ON CONFLICT ({', '.join(key)}) DO UPDATE SET {updates}"
    )


def _params(model: BaseModel, columns: Sequence[str]) -> Tuple[Any, ...]:
    """Positional parameters for a model, enums flattened to their values."""
    data = model.model_dump()
    return tuple(data[c].value if isinstance(data[c], Enum) else data[c] for c in columns)


def _group_from_row(row: Any) -> ErrorGroup:
    return ErrorGroup(
        id=row["id"],
        component_id=row["component_id"],
        fingerprint=row["fingerprint"],
        error_type=row["error_type"],
        error_name=row["error_name"],
        message=row["message"],
        sample_stack=row["sample_stack"],
        occurrence_count=row["occurrence_count"],
        affected_sites_count=row["affected_sites_count"],
        affected_sessions_count=row["affected_sessions_count"],
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
        status=ErrorGroupStatus(row["status"]),
        priority=ErrorPriority(row["priority"]),
        affected_versions=list(row["affected_versions"] or []),
        assigned_to=row["assigned_to"],
        resolution_notes=row["resolution_notes"],
    )


class PostgresEventStore:
    """
    PostgreSQL storage backend for component telemetry.

    Handles all database operations for the collector, aggregator and alert
    evaluator. Driver failures surface as StoreUnavailableError.
    """

    def __init__(
        self,
        dsn: str,
        pool_min_size: int = 2,
        pool_max_size: int = 10,
        command_timeout: float = 10.0,
    ):
        """
        Initialize storage backend.

        Args:
            dsn: PostgreSQL connection string
            pool_min_size: Minimum connection pool size
            pool_max_size: Maximum connection pool size
            command_timeout: Per-statement timeout in seconds
        """
        self.dsn = dsn
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Establish connection pool to database."""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.pool_min_size,
                max_size=self.pool_max_size,
                command_timeout=self.command_timeout,
                init=self._init_connection,
            )
            logger.info("Connected to PostgreSQL")
        except _DRIVER_ERRORS as e:
            logger.error(f"Failed to connect to database: {e}")
            raise StoreUnavailableError(f"Failed to connect to database: {e}") from e

    async def _init_connection(self, conn: Any) -> None:
        """Decode JSONB columns to Python objects on every pooled connection."""
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Disconnected from PostgreSQL")

    async def ensure_connected(self) -> None:
        """Ensure we have an active connection pool."""
        if not self._pool:
            await self.connect()

    async def create_schema(self) -> None:
        """Create tables and indexes if they do not exist. Requires PostgreSQL 15+."""
        async with self._connection() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Analytics schema ensured")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        await self.ensure_connected()
        if not self._pool:
            raise StoreUnavailableError("Database connection not established")

        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _DRIVER_ERRORS as e:
            logger.error(f"Database operation failed: {e}")
            raise StoreUnavailableError(str(e)) from e

    # ------------------------------------------------------------------
    # Raw telemetry
    # ------------------------------------------------------------------

    async def insert_events(self, events: Sequence[Event]) -> None:
        """Append raw events. Replayed ids are ignored."""
        if not events:
            return

        records = [_params(event, EVENT_COLUMNS) for event in events]
        sql = _insert_sql("component_events", EVENT_COLUMNS, "ON CONFLICT (id) DO NOTHING")
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(sql, records)
        logger.debug(f"Stored {len(records)} events")

    async def insert_error_records(self, records: Sequence[ErrorRecord]) -> None:
        """Append error occurrence rows. Replayed ids are ignored."""
        if not records:
            return

        rows = [_params(record, ERROR_RECORD_COLUMNS) for record in records]
        sql = _insert_sql("component_errors", ERROR_RECORD_COLUMNS, "ON CONFLICT (id) DO NOTHING")
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(sql, rows)

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

        Args:
            component_id: Component to query
            start: Inclusive lower bound on created_at
            end: Exclusive upper bound on created_at
            event_types: Restrict to these types (all types when None)
            limit: Maximum rows (unbounded when None)

        Returns:
            Events ordered by created_at ascending
        """
        types = [t.value for t in event_types] if event_types else None
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {', '.join(EVENT_COLUMNS)} FROM component_events
                WHERE component_id = $1
                  AND created_at >= $2 AND created_at < $3
                  AND ($4::text[] IS NULL OR event_type = ANY($4::text[]))
                ORDER BY created_at ASC
                LIMIT $5
            """,
                component_id,
                start,
                end,
                types,
                limit,
            )
        return [Event.model_validate(dict(row)) for row in rows]

    async def list_active_components(self, start: datetime, end: datetime) -> List[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT component_id FROM component_events
                WHERE created_at >= $1 AND created_at < $2
                ORDER BY component_id
            """,
                start,
                end,
            )
        return [row["component_id"] for row in rows]

    # ------------------------------------------------------------------
    # Rollups
    # ------------------------------------------------------------------

    async def upsert_hourly_aggregates(self, aggregates: Sequence[HourlyAggregate]) -> None:
        """Replace hourly rollups keyed by (component_id, version_id, hour_bucket)."""
        if not aggregates:
            return

        sql = _upsert_sql(
            "component_hourly_aggregates",
            HOURLY_COLUMNS,
            ("component_id", "version_id", "hour_bucket"),
        )
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(sql, [_params(a, HOURLY_COLUMNS) for a in aggregates])
        logger.debug(f"Upserted {len(aggregates)} hourly aggregates")

    async def query_hourly_aggregates(
        self, component_id: str, start: datetime, end: datetime
    ) -> List[HourlyAggregate]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {', '.join(HOURLY_COLUMNS)} FROM component_hourly_aggregates
                WHERE component_id = $1 AND hour_bucket >= $2 AND hour_bucket < $3
                ORDER BY hour_bucket ASC, version_id ASC NULLS FIRST
            """,
                component_id,
                start,
                end,
            )
        return [HourlyAggregate.model_validate(dict(row)) for row in rows]

    async def upsert_daily_aggregates(self, aggregates: Sequence[DailyAggregate]) -> None:
        """Replace daily rollups keyed by (component_id, version_id, date_bucket)."""
        if not aggregates:
            return

        sql = _upsert_sql(
            "component_daily_aggregates",
            DAILY_COLUMNS,
            ("component_id", "version_id", "date_bucket"),
        )
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(sql, [_params(a, DAILY_COLUMNS) for a in aggregates])
        logger.debug(f"Upserted {len(aggregates)} daily aggregates")

    async def query_daily_aggregates(
        self, component_id: str, start: date, end: date
    ) -> List[DailyAggregate]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {', '.join(DAILY_COLUMNS)} FROM component_daily_aggregates
                WHERE component_id = $1 AND date_bucket >= $2 AND date_bucket <= $3
                ORDER BY date_bucket ASC, version_id ASC NULLS FIRST
            """,
                component_id,
                start,
                end,
            )
        return [DailyAggregate.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Error groups
    # ------------------------------------------------------------------

    async def upsert_error_group(self, record: ErrorRecord) -> ErrorGroup:
        """
        Merge one occurrence into its group in a single statement.

        Concurrent recurrences serialize on the (component_id, fingerprint) row
        lock, so no increment is lost.
        """
        sessions = [record.session_id] if record.session_id else []
        versions = [record.version_id] if record.version_id else []
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO component_error_groups (
                    id, component_id, fingerprint, error_type, error_name, message,
                    sample_stack, occurrence_count, affected_site_ids,
                    affected_session_ids, affected_versions, first_seen, last_seen,
                    status, priority
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, 1, $8::text[], $9::text[], $10::text[],
                    $11, $11, 'open', 'medium'
                )
                ON CONFLICT (component_id, fingerprint) DO UPDATE SET
                    occurrence_count = component_error_groups.occurrence_count + 1,
                    first_seen = LEAST(component_error_groups.first_seen, EXCLUDED.first_seen),
                    last_seen = GREATEST(component_error_groups.last_seen, EXCLUDED.last_seen),
                    affected_site_ids = ARRAY(
                        SELECT DISTINCT unnest(
                            component_error_groups.affected_site_ids || EXCLUDED.affected_site_ids
                        )
                    ),
                    affected_session_ids = ARRAY(
                        SELECT DISTINCT unnest(
                            component_error_groups.affected_session_ids
                            || EXCLUDED.affected_session_ids
                        )
                    ),
                    affected_versions = ARRAY(
                        SELECT DISTINCT unnest(
                            component_error_groups.affected_versions || EXCLUDED.affected_versions
                        )
                    ),
                    status = CASE
                        WHEN component_error_groups.status = 'resolved' THEN 'open'
                        ELSE component_error_groups.status
                    END
                {_GROUP_RETURNING}
            """,
                record.id,
                record.component_id,
                record.fingerprint,
                record.error_type,
                record.error_name,
                record.message,
                record.stack,
                [record.site_id],
                sessions,
                versions,
                record.occurred_at,
            )
        return _group_from_row(row)

    async def get_error_group(self, component_id: str, fingerprint: str) -> Optional[ErrorGroup]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT *,
                    cardinality(affected_site_ids) AS affected_sites_count,
                    cardinality(affected_session_ids) AS affected_sessions_count
                FROM component_error_groups
                WHERE component_id = $1 AND fingerprint = $2
            """,
                component_id,
                fingerprint,
            )
        return _group_from_row(row) if row else None

    async def list_error_groups(
        self,
        component_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        limit: int = 100,
    ) -> List[ErrorGroup]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT *,
                    cardinality(affected_site_ids) AS affected_sites_count,
                    cardinality(affected_session_ids) AS affected_sessions_count
                FROM component_error_groups
                WHERE component_id = $1
                  AND ($2::text IS NULL OR status = $2)
                  AND ($3::text IS NULL OR priority = $3)
                ORDER BY last_seen DESC
                LIMIT $4
            """,
                component_id,
                status.value if status else None,
                priority.value if priority else None,
                limit,
            )
        return [_group_from_row(row) for row in rows]

    async def update_error_group(
        self,
        group_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        assigned_to: Optional[str] = None,
        resolution_notes: Optional[str] = None,
    ) -> Optional[ErrorGroup]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE component_error_groups SET
                    status = COALESCE($2, status),
                    priority = COALESCE($3, priority),
                    assigned_to = COALESCE($4, assigned_to),
                    resolution_notes = COALESCE($5, resolution_notes)
                WHERE id = $1
                {_GROUP_RETURNING}
            """,
                group_id,
                status.value if status else None,
                priority.value if priority else None,
                assigned_to,
                resolution_notes,
            )
        return _group_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Alerting
    # ------------------------------------------------------------------

    async def list_enabled_alert_rules(self) -> List[AlertRule]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM component_alert_rules WHERE enabled ORDER BY component_id, id"
            )
        return [AlertRule.model_validate(dict(row)) for row in rows]

    async def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM component_alert_rules WHERE id = $1", rule_id)
        return AlertRule.model_validate(dict(row)) if row else None

    async def create_alert_if_absent(self, alert: Alert) -> Tuple[Alert, bool]:
        """
        Insert an alert unless one is already open for its key.

        The partial unique index on open alerts makes the insert and the
        duplicate check a single atomic statement.
        """
        insert_sql = _insert_sql(
            "component_alerts",
            ALERT_COLUMNS,
            f"ON CONFLICT (component_id, alert_type, metric) "
            f"WHERE status IN ({_OPEN_STATUS_SQL}) DO NOTHING "
            f"RETURNING {', '.join(ALERT_COLUMNS)}",
        )
        async with self._connection() as conn:
            # The blocking alert may resolve between the two statements; retry once.
            for _ in range(2):
                row = await conn.fetchrow(insert_sql, *_params(alert, ALERT_COLUMNS))
                if row:
                    return Alert.model_validate(dict(row)), True

                existing = await conn.fetchrow(
                    f"""
                    SELECT {', '.join(ALERT_COLUMNS)} FROM component_alerts
                    WHERE component_id = $1 AND alert_type = $2 AND metric = $3
                      AND status IN ({_OPEN_STATUS_SQL})
                """,
                    alert.component_id,
                    alert.alert_type.value,
                    alert.metric.value,
                )
                if existing:
                    return Alert.model_validate(dict(existing)), False

        raise StoreUnavailableError(
            f"Could not create or find open alert for {alert.component_id}/{alert.metric.value}"
        )

    async def list_open_alerts(self, component_id: Optional[str] = None) -> List[Alert]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {', '.join(ALERT_COLUMNS)} FROM component_alerts
                WHERE status IN ({_OPEN_STATUS_SQL})
                  AND ($1::text IS NULL OR component_id = $1)
                ORDER BY triggered_at ASC
            """,
                component_id,
            )
        return [Alert.model_validate(dict(row)) for row in rows]

    async def resolve_alert(
        self, alert_id: str, resolved_at: datetime, auto_resolved: bool
    ) -> Optional[Alert]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE component_alerts
                SET status = $2, resolved_at = $3, auto_resolved = $4
                WHERE id = $1 AND status <> $2
                RETURNING {', '.join(ALERT_COLUMNS)}
            """,
                alert_id,
                AlertStatus.RESOLVED.value,
                resolved_at,
                auto_resolved,
            )
        return Alert.model_validate(dict(row)) if row else None

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    async def get_baseline(
        self, component_id: str, version_id: Optional[str], metric: AlertMetric
    ) -> Optional[PerformanceBaseline]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {', '.join(BASELINE_COLUMNS)} FROM component_baselines
                WHERE component_id = $1
                  AND version_id IS NOT DISTINCT FROM $2
                  AND metric = $3
            """,
                component_id,
                version_id,
                metric.value,
            )
        return PerformanceBaseline.model_validate(dict(row)) if row else None

    async def upsert_baselines(self, baselines: Sequence[PerformanceBaseline]) -> None:
        if not baselines:
            return

        sql = _upsert_sql(
            "component_baselines", BASELINE_COLUMNS, ("component_id", "version_id", "metric")
        )
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(sql, [_params(b, BASELINE_COLUMNS) for b in baselines])

    async def is_healthy(self) -> bool:
        """Check database connectivity. Never raises."""
        try:
            async with self._connection() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except StoreUnavailableError:
            return False

    def describe(self) -> Dict[str, Any]:
        """Connection settings for status output, without credentials."""
        return {
            "backend": "postgresql",
            "connected": self._pool is not None,
            "pool_min_size": self.pool_min_size,
            "pool_max_size": self.pool_max_size,
        }
