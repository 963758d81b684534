"""
Unit tests for buffered telemetry ingestion.
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from component_analytics.aggregation import Aggregator
from component_analytics.collector import TelemetryCollector
from component_analytics.config import CollectorSettings
from component_analytics.exceptions import StoreUnavailableError
from component_analytics.live_stream import LiveStream
from component_analytics.schemas import EventType
from component_analytics.utils.privacy import hash_identifier

FAR_PAST = datetime(2000, 1, 1, tzinfo=timezone.utc)
FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


async def stored_events(store, component_id="comp-x"):
    return await store.query_events(component_id, FAR_PAST, FAR_FUTURE)


def record_render(collector, name="mount", **kwargs):
    collector.record("comp-x", "site-1", "render", name, **kwargs)


class TestRecord:
    """Test event normalization at ingestion."""

    @pytest.fixture
    def collector(self, store):
        return TelemetryCollector(store, batch_size=100, ip_hash_salt="pepper")

    @pytest.mark.asyncio
    async def test_record_only_buffers(self, collector, store):
        record_render(collector)

        assert collector.get_stats().buffered_events == 1
        assert await stored_events(store) == []

    def test_unknown_event_type_dropped(self, collector):
        collector.record("comp-x", "site-1", "teleport", "mount")

        assert collector.get_stats().buffered_events == 0

    def test_invalid_fields_dropped(self, collector):
        collector.record("", "site-1", "render", "mount")
        record_render(collector, duration_ms=-5)

        assert collector.get_stats().buffered_events == 0

    def test_accepts_enum_event_type(self, collector):
        collector.record("comp-x", "site-1", EventType.API_CALL, "api_success")

        assert collector._buffer[0].event_type == EventType.API_CALL

    def test_ip_hashed_and_removed(self, collector):
        record_render(
            collector,
            payload={"ip": "203.0.113.7", "props": 3},
            metadata={"client_ip": "198.51.100.1"},
        )

        event = collector._buffer[0]
        assert event.payload == {"props": 3}
        assert event.metadata == {"ip_hash": hash_identifier("203.0.113.7", "pepper")}
        dumped = event.model_dump_json()
        assert "203.0.113.7" not in dumped
        assert "198.51.100.1" not in dumped

    def test_explicit_ip_and_user_agent(self, collector):
        record_render(
            collector,
            ip_address="203.0.113.7",
            user_agent="Mozilla/5.0 (iPad; CPU OS 17_0) Mobile/15E148",
        )

        metadata = collector._buffer[0].metadata
        assert metadata["ip_hash"] == hash_identifier("203.0.113.7", "pepper")
        assert metadata["device_type"] == "tablet"

    def test_duration_lifted_from_payload(self, collector):
        record_render(collector, payload={"render_time": 42, "memory": 512})
        record_render(collector, payload={"render_time": 42}, duration_ms=7)

        first, second = collector._buffer
        assert first.duration_ms == 42.0
        assert first.memory_kb == 512.0
        assert second.duration_ms == 7

    def test_country_code_normalized(self, collector):
        record_render(collector, country_code="us")
        record_render(collector, country_code="USA")

        first, second = collector._buffer
        assert first.country_code == "US"
        assert second.country_code is None

    def test_buffer_cap_drops_oldest(self, store):
        collector = TelemetryCollector(store, batch_size=2, max_buffer_size=3)

        for i in range(5):
            record_render(collector, name=f"e{i}")

        assert [e.event_name for e in collector._buffer] == ["e2", "e3", "e4"]
        assert collector.get_stats().events_dropped == 2

    def test_concurrent_producers(self, collector):
        def produce():
            for _ in range(25):
                record_render(collector)

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert collector.get_stats().buffered_events == 100


class TestFlush:
    """Test flush triggers, failure handling and shutdown."""

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self, store):
        collector = TelemetryCollector(store, batch_size=3, flush_interval_seconds=60)
        await collector.start()
        try:
            record_render(collector)
            record_render(collector)
            await asyncio.sleep(0.05)
            assert await stored_events(store) == []

            record_render(collector)
            await asyncio.sleep(0.05)
            assert len(await stored_events(store)) == 3
        finally:
            await collector.stop()

    @pytest.mark.asyncio
    async def test_timer_triggers_flush(self, store):
        collector = TelemetryCollector(store, batch_size=100, flush_interval_seconds=0.05)
        await collector.start()
        try:
            record_render(collector)
            await asyncio.sleep(0.2)
            assert len(await stored_events(store)) == 1
        finally:
            await collector.stop()

    @pytest.mark.asyncio
    async def test_failed_flush_requeues_in_order(self, store):
        collector = TelemetryCollector(store)
        record_render(collector, name="a")
        record_render(collector, name="b")
        store.set_available(False)

        assert await collector.flush() == 0

        record_render(collector, name="c")
        assert [e.event_name for e in collector._buffer] == ["a", "b", "c"]
        stats = collector.get_stats()
        assert stats.flush_failures == 1
        assert stats.events_requeued == 2
        assert stats.last_error

        store.set_available(True)
        assert await collector.flush() == 3
        assert len(await stored_events(store)) == 3
        assert collector.get_stats().buffered_events == 0

    @pytest.mark.asyncio
    async def test_requeue_respects_cap(self, store):
        collector = TelemetryCollector(store, batch_size=1, max_buffer_size=2)
        record_render(collector, name="a")
        record_render(collector, name="b")
        store.set_available(False)
        await collector.flush()

        record_render(collector, name="c")

        assert [e.event_name for e in collector._buffer] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining(self, store):
        collector = TelemetryCollector(store, batch_size=100, flush_interval_seconds=60)
        await collector.start()
        record_render(collector)
        record_render(collector)

        await collector.stop()

        assert not collector.is_running
        assert len(await stored_events(store)) == 2

    @pytest.mark.asyncio
    async def test_flush_publishes_committed_events(self, store):
        stream = LiveStream()
        subscription = stream.subscribe("comp-x")
        collector = TelemetryCollector(store, publisher=stream)
        record_render(collector)

        store.set_available(False)
        await collector.flush()
        assert subscription.queue.qsize() == 0

        store.set_available(True)
        await collector.flush()
        assert subscription.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_naive_timestamps_stored_as_utc(self, store, hour_h):
        collector = TelemetryCollector(store)
        record_render(collector, duration_ms=10, created_at=datetime(2026, 3, 10, 10, 5))
        await collector.flush()

        (event,) = await stored_events(store)
        assert event.created_at == hour_h + timedelta(minutes=5)
        assert event.created_at.tzinfo is not None

        (hourly,) = await Aggregator(store).aggregate_hour("comp-x", hour_h)
        assert hourly.total_renders == 1

    @pytest.mark.asyncio
    async def test_backlog_after_recovery_flushes_without_waiting(self, store, make_event):
        collector = TelemetryCollector(store, batch_size=2, flush_interval_seconds=60)
        insert = store.insert_events
        calls = []

        async def flaky_insert(events):
            calls.append(len(events))
            if len(calls) == 1:
                raise StoreUnavailableError("database down")
            if len(calls) == 2:
                # arrivals during the write, past the size trigger
                with collector._lock:
                    collector._buffer.extend([make_event(), make_event()])
            await insert(events)

        with patch.object(store, "insert_events", side_effect=flaky_insert):
            await collector.start()
            try:
                record_render(collector)
                record_render(collector)
                await asyncio.sleep(0.05)
                assert collector.get_stats().flush_failures == 1

                record_render(collector)
                await asyncio.sleep(0.1)

                assert calls == [2, 3, 2]
                assert len(await stored_events(store)) == 5
            finally:
                await collector.stop()

    def test_from_config(self, store):
        collector = TelemetryCollector.from_config(
            store, CollectorSettings(batch_size=7, flush_interval_seconds=1.5)
        )

        assert collector.batch_size == 7
        assert collector.flush_interval_seconds == 1.5


class TestRecordError:
    """Test the write-through error path."""

    @pytest.fixture
    def collector(self, store):
        return TelemetryCollector(store)

    async def _record(self, collector, **kwargs):
        await collector.record_error(
            "comp-x",
            "site-1",
            "runtime",
            "TypeError",
            message="x is undefined",
            stack="at render (widget.js:1:2)",
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_writes_record_event_and_group(self, collector, store):
        await self._record(collector, version_id="1.0.0", ip_address="203.0.113.7")

        (record,) = store.list_error_records("comp-x")
        (event,) = await stored_events(store)
        (group,) = await store.list_error_groups("comp-x")

        assert event.id == record.id
        assert event.event_type == EventType.ERROR
        assert event.event_name == "TypeError"
        assert event.payload["fingerprint"] == record.fingerprint
        assert record.ip_hash is not None
        assert group.fingerprint == record.fingerprint
        assert group.occurrence_count == 1
        assert collector.get_stats().errors_flushed == 1

    @pytest.mark.asyncio
    async def test_store_outage_keeps_error_for_retry(self, collector, store):
        store.set_available(False)

        await self._record(collector)

        assert collector.get_stats().buffered_errors == 1

        store.set_available(True)
        assert await collector.flush_errors() == 1
        assert len(store.list_error_records("comp-x")) == 1
        assert len(await store.list_error_groups("comp-x")) == 1
        assert collector.get_stats().buffered_errors == 0

    @pytest.mark.asyncio
    async def test_repeated_errors_share_group(self, collector, store):
        await self._record(collector, session_id="s1")
        await self._record(collector, session_id="s2")

        (group,) = await store.list_error_groups("comp-x")
        assert group.occurrence_count == 2
        assert group.affected_sessions_count == 2
        assert len(store.list_error_records("comp-x")) == 2

    @pytest.mark.asyncio
    async def test_naive_occurrence_time_stored_as_utc(self, collector, store, hour_h):
        await self._record(collector, occurred_at=datetime(2026, 3, 10, 10, 20))

        (record,) = store.list_error_records("comp-x")
        (group,) = await store.list_error_groups("comp-x")
        assert record.occurred_at == hour_h + timedelta(minutes=20)
        assert group.first_seen == hour_h + timedelta(minutes=20)

    @pytest.mark.asyncio
    async def test_grouping_retry_does_not_republish(self, store):
        stream = LiveStream()
        subscription = stream.subscribe("comp-x")
        collector = TelemetryCollector(store, publisher=stream)
        group = collector.grouper.group
        attempts = []

        async def flaky_group(record):
            attempts.append(record.id)
            if len(attempts) == 1:
                raise StoreUnavailableError("database down")
            return await group(record)

        with patch.object(collector.grouper, "group", side_effect=flaky_group):
            await self._record(collector)
            assert collector.get_stats().buffered_errors == 1
            assert subscription.queue.qsize() == 1

            assert await collector.flush_errors() == 1

        assert subscription.queue.qsize() == 1
        assert collector.get_stats().buffered_errors == 0
        assert len(await store.list_error_groups("comp-x")) == 1

        await self._record(collector)
        assert subscription.queue.qsize() == 2
