"""
Buffered telemetry ingestion.

Producers call `record()` / `record_error()` from component sandboxes. General
events sit in an in-memory buffer until it reaches `batch_size` or the flush
timer fires; errors are written through immediately. Store failures never reach
producers: failed batches go back to the front of their buffer, and the oldest
entries are dropped once a buffer exceeds its cap.
"""

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from component_analytics.config import CollectorSettings
from component_analytics.exceptions import InvalidEventError
from component_analytics.grouping import ErrorGrouper
from component_analytics.protocols import EventPublisher, EventStore
from component_analytics.schemas import (
    CollectorStats,
    ErrorEvent,
    ErrorRecord,
    Event,
    EventType,
)
from component_analytics.utils.log_sanitizer import sanitize_for_log
from component_analytics.utils.privacy import detect_device_type, hash_identifier

logger = logging.getLogger(__name__)

# Well-known payload keys lifted into typed fields when not passed explicitly
DURATION_KEYS = ("duration_ms", "duration", "render_time", "latency_ms")
MEMORY_KEYS = ("memory_kb", "memory")
IP_KEYS = ("ip", "ip_address", "client_ip", "remote_addr")


def _lift_number(payload: Dict[str, Any], keys: tuple) -> Optional[float]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            return float(value)
    return None


class TelemetryCollector:
    """
    Process-wide ingestion buffer with a cancellable flush task.

    `record()` is safe to call from any thread and never performs I/O.
    `record_error()` performs the error write before returning, trading
    latency for durability of failure data.
    """

    def __init__(
        self,
        store: EventStore,
        grouper: Optional[ErrorGrouper] = None,
        publisher: Optional[EventPublisher] = None,
        batch_size: int = 100,
        flush_interval_seconds: float = 5.0,
        max_buffer_size: int = 10_000,
        max_error_buffer_size: int = 1_000,
        ip_hash_salt: str = "component-analytics",
    ):
        """
        Initialize collector.

        Args:
            store: Event store receiving flushed batches
            grouper: Error grouper (defaults to one over the same store)
            publisher: Live-stream publisher notified after each committed flush
            batch_size: Buffered event count that triggers an early flush
            flush_interval_seconds: Periodic flush interval
            max_buffer_size: Cap on buffered events; oldest dropped beyond it
            max_error_buffer_size: Cap on buffered errors awaiting retry
            ip_hash_salt: Salt for one-way hashing of IP addresses
        """
        self.store = store
        self.grouper = grouper or ErrorGrouper(store)
        self.publisher = publisher
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self.max_buffer_size = max(max_buffer_size, batch_size)
        self.max_error_buffer_size = max_error_buffer_size
        self.ip_hash_salt = ip_hash_salt

        self._lock = threading.Lock()
        self._buffer: List[Event] = []
        self._error_buffer: List[ErrorRecord] = []
        self._flush_lock = asyncio.Lock()
        self._error_flush_lock = asyncio.Lock()
        # Ids of error events already sent to the live stream whose grouping is still pending
        self._published_pending: Set[str] = set()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._events_flushed = 0
        self._errors_flushed = 0
        self._flush_failures = 0
        self._events_requeued = 0
        self._events_dropped = 0
        self._last_flush: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        store: EventStore,
        settings: CollectorSettings,
        grouper: Optional[ErrorGrouper] = None,
        publisher: Optional[EventPublisher] = None,
    ) -> "TelemetryCollector":
        """Build a collector from the `collector` config section."""
        return cls(
            store,
            grouper=grouper,
            publisher=publisher,
            batch_size=settings.batch_size,
            flush_interval_seconds=settings.flush_interval_seconds,
            max_buffer_size=settings.max_buffer_size,
            max_error_buffer_size=settings.max_error_buffer_size,
            ip_hash_salt=settings.ip_hash_salt,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record(
        self,
        component_id: str,
        site_id: str,
        event_type: Any,
        event_name: str,
        payload: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
        memory_kb: Optional[float] = None,
        version_id: Optional[str] = None,
        category: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        page_path: Optional[str] = None,
        session_id: Optional[str] = None,
        country_code: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        """
        Buffer one telemetry event. Fire-and-forget.

        Invalid input is logged and dropped rather than raised to the producer.
        """
        try:
            event = self._build_event(
                component_id=component_id,
                site_id=site_id,
                event_type=event_type,
                event_name=event_name,
                payload=payload,
                duration_ms=duration_ms,
                memory_kb=memory_kb,
                version_id=version_id,
                category=category,
                metadata=metadata,
                page_path=page_path,
                session_id=session_id,
                country_code=country_code,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=created_at,
            )
        except (InvalidEventError, ValueError) as e:
            logger.warning(
                f"Dropping invalid event from component {sanitize_for_log(component_id)}: "
                f"{sanitize_for_log(e, max_length=300)}"
            )
            return

        with self._lock:
            self._buffer.append(event)
            self._enforce_cap(self._buffer, self.max_buffer_size, "event")
            should_flush = len(self._buffer) >= self.batch_size

        if should_flush:
            self._request_flush()

    async def record_error(
        self,
        component_id: str,
        site_id: str,
        error_type: str,
        error_name: str,
        message: str = "",
        stack: Optional[str] = None,
        version_id: Optional[str] = None,
        source_file: Optional[str] = None,
        source_line: Optional[int] = None,
        source_column: Optional[int] = None,
        browser: Optional[str] = None,
        os_name: Optional[str] = None,
        page_path: Optional[str] = None,
        session_id: Optional[str] = None,
        component_state: Optional[Dict[str, Any]] = None,
        props_snapshot: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """
        Record an error and write it through to the store before returning.

        A missing stack still fingerprints (on an empty normalized stack).
        Write failures leave the error buffered for the next flush cycle.
        """
        try:
            error = ErrorEvent(
                component_id=component_id,
                site_id=site_id,
                version_id=version_id,
                error_type=error_type,
                error_name=error_name,
                message=message or "",
                stack=stack,
                source_file=source_file,
                source_line=source_line,
                source_column=source_column,
                browser=browser,
                os=os_name,
                device_type=detect_device_type(user_agent) if user_agent else None,
                page_path=page_path,
                session_id=session_id or None,
                ip_hash=hash_identifier(ip_address, self.ip_hash_salt),
                component_state=component_state or {},
                props_snapshot=props_snapshot or {},
                occurred_at=occurred_at or datetime.now(timezone.utc),
            )
        except ValueError as e:
            logger.warning(
                f"Dropping invalid error from component {sanitize_for_log(component_id)}: "
                f"{sanitize_for_log(e, max_length=300)}"
            )
            return

        record = self.grouper.build_record(error)
        with self._lock:
            self._error_buffer.append(record)
            self._enforce_cap(self._error_buffer, self.max_error_buffer_size, "error")

        await self.flush_errors()

    def _build_event(
        self,
        component_id: str,
        site_id: str,
        event_type: Any,
        event_name: str,
        payload: Optional[Dict[str, Any]],
        duration_ms: Optional[float],
        memory_kb: Optional[float],
        version_id: Optional[str],
        category: Optional[str],
        metadata: Optional[Dict[str, Any]],
        page_path: Optional[str],
        session_id: Optional[str],
        country_code: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        created_at: Optional[datetime],
    ) -> Event:
        payload = dict(payload or {})
        metadata = dict(metadata or {})

        # Raw IPs never leave this function
        for source in (payload, metadata):
            for key in IP_KEYS:
                raw_ip = source.pop(key, None)
                if raw_ip and not ip_address:
                    ip_address = str(raw_ip)
        ip_hash = hash_identifier(ip_address, self.ip_hash_salt)
        if ip_hash:
            metadata["ip_hash"] = ip_hash
        if user_agent:
            metadata["device_type"] = detect_device_type(user_agent)

        if duration_ms is None:
            duration_ms = _lift_number(payload, DURATION_KEYS)
        if memory_kb is None:
            memory_kb = _lift_number(payload, MEMORY_KEYS)

        try:
            event_type = EventType(event_type)
        except ValueError:
            raise InvalidEventError(f"Unknown event type: {sanitize_for_log(event_type)}")

        country = country_code.strip().upper() if country_code else None
        if country and len(country) != 2:
            country = None

        return Event(
            id=str(uuid.uuid4()),
            component_id=component_id,
            version_id=version_id or None,
            site_id=site_id,
            event_type=event_type,
            event_name=event_name,
            category=category,
            payload=payload,
            metadata=metadata,
            duration_ms=duration_ms,
            memory_kb=memory_kb,
            page_path=page_path,
            session_id=session_id or None,
            country_code=country,
            created_at=created_at or datetime.now(timezone.utc),
        )

    def _enforce_cap(self, buffer: list, cap: int, kind: str) -> None:
        """Drop oldest entries beyond cap. Caller holds self._lock."""
        overflow = len(buffer) - cap
        if overflow > 0:
            del buffer[:overflow]
            self._events_dropped += overflow
            logger.warning(f"{kind} buffer over capacity ({cap}), dropped {overflow} oldest")

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def _request_flush(self) -> None:
        """Wake the flush task. Before start(), the buffer waits for start/stop."""
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)

    async def flush(self) -> int:
        """
        Write all buffered events to the store.

        The buffer reference is swapped out under the lock before the write,
        so producers keep appending to a fresh list while the batch is in flight.

        Returns:
            Number of events written (0 on failure; the batch is requeued)
        """
        async with self._flush_lock:
            with self._lock:
                if not self._buffer:
                    return 0
                batch, self._buffer = self._buffer, []

            try:
                await self.store.insert_events(batch)
            except asyncio.CancelledError:
                self._requeue_events(batch)
                raise
            except Exception as e:
                self._flush_failures += 1
                self._last_error = str(e)
                self._requeue_events(batch)
                logger.error(f"Failed to flush {len(batch)} events, requeued for retry: {e}")
                return 0

            self._events_flushed += len(batch)
            self._last_flush = datetime.now(timezone.utc)
            logger.debug(f"Flushed {len(batch)} events")
            self._publish(batch)
            return len(batch)

    async def flush_errors(self) -> int:
        """
        Write buffered errors, their raw `error` events, and merge their groups.

        Records keep their ids across retries, so a replayed write is ignored by
        the store rather than duplicated.

        Returns:
            Number of errors fully processed
        """
        async with self._error_flush_lock:
            with self._lock:
                if not self._error_buffer:
                    return 0
                batch, self._error_buffer = self._error_buffer, []

            events = [self._error_to_event(record) for record in batch]
            try:
                await self.store.insert_error_records(batch)
                await self.store.insert_events(events)
            except asyncio.CancelledError:
                self._requeue_errors(batch)
                raise
            except Exception as e:
                self._flush_failures += 1
                self._last_error = str(e)
                self._requeue_errors(batch)
                logger.error(f"Failed to flush {len(batch)} errors, requeued for retry: {e}")
                return 0

            retry: List[ErrorRecord] = []
            for record in batch:
                try:
                    await self.grouper.group(record)
                except Exception as e:
                    self._last_error = str(e)
                    retry.append(record)
                    logger.error(f"Failed to group error {record.fingerprint}: {e}")

            if retry:
                self._flush_failures += 1
                self._requeue_errors(retry)

            processed = len(batch) - len(retry)
            self._errors_flushed += processed
            self._last_flush = datetime.now(timezone.utc)
            self._publish([e for e in events if e.id not in self._published_pending])
            self._published_pending = {record.id for record in retry}
            return processed

    def _requeue_events(self, batch: List[Event]) -> None:
        with self._lock:
            self._buffer = batch + self._buffer
            self._events_requeued += len(batch)
            self._enforce_cap(self._buffer, self.max_buffer_size, "event")

    def _requeue_errors(self, batch: List[ErrorRecord]) -> None:
        with self._lock:
            self._error_buffer = batch + self._error_buffer
            self._events_requeued += len(batch)
            self._enforce_cap(self._error_buffer, self.max_error_buffer_size, "error")

    def _error_to_event(self, record: ErrorRecord) -> Event:
        metadata: Dict[str, Any] = {}
        for key, value in (
            ("device_type", record.device_type),
            ("browser", record.browser),
            ("os", record.os),
            ("ip_hash", record.ip_hash),
        ):
            if value:
                metadata[key] = value

        return Event(
            id=record.id,
            component_id=record.component_id,
            version_id=record.version_id,
            site_id=record.site_id,
            event_type=EventType.ERROR,
            event_name=record.error_name,
            category=record.error_type,
            payload={
                "message": record.message,
                "fingerprint": record.fingerprint,
                "source_file": record.source_file,
                "source_line": record.source_line,
                "source_column": record.source_column,
            },
            metadata=metadata,
            page_path=record.page_path,
            session_id=record.session_id,
            created_at=record.occurred_at,
        )

    def _publish(self, events: List[Event]) -> None:
        if not self.publisher or not events:
            return
        try:
            self.publisher.publish(events)
        except Exception as e:
            logger.error(f"Live stream publish failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic flush task."""
        if self._running:
            logger.warning("Collector already running")
            return

        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())

        with self._lock:
            pending = len(self._buffer)
        if pending >= self.batch_size:
            self._wakeup.set()

        logger.info(
            f"Started telemetry collector (batch_size={self.batch_size}, "
            f"interval={self.flush_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Cancel the flush task and perform one final flush."""
        if self._running:
            self._running = False
            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None

        flushed = await self.flush()
        flushed_errors = await self.flush_errors()
        self._wakeup = None
        self._loop = None
        logger.info(
            f"Stopped telemetry collector (final flush: {flushed} events, {flushed_errors} errors)"
        )

    async def _flush_loop(self) -> None:
        assert self._wakeup is not None
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.flush_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

            flushed = await self.flush()
            await self.flush_errors()

            with self._lock:
                backlog = len(self._buffer)
            # Re-wake only after a successful write; a failing store waits for the timer
            if flushed and backlog >= self.batch_size:
                self._wakeup.set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> CollectorStats:
        """Get buffer and flush statistics."""
        with self._lock:
            buffered_events = len(self._buffer)
            buffered_errors = len(self._error_buffer)
        return CollectorStats(
            buffered_events=buffered_events,
            buffered_errors=buffered_errors,
            events_flushed=self._events_flushed,
            errors_flushed=self._errors_flushed,
            flush_failures=self._flush_failures,
            events_requeued=self._events_requeued,
            events_dropped=self._events_dropped,
            last_flush=self._last_flush.isoformat() if self._last_flush else None,
            last_error=self._last_error,
        )

    @property
    def is_running(self) -> bool:
        """Check if the flush task is running."""
        return self._running
