"""
Unit tests for the live event stream.
"""

import asyncio

import pytest

from component_analytics.live_stream import LiveStream


class TestLiveStream:
    """Test fan-out to subscribers."""

    @pytest.mark.asyncio
    async def test_filters_by_component(self, make_event):
        stream = LiveStream()
        mine = stream.subscribe("comp-x")
        everything = stream.subscribe()

        stream.publish([make_event(), make_event(component_id="comp-y")])

        assert mine.queue.qsize() == 1
        assert (await mine.get()).component_id == "comp-x"
        assert everything.queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self, make_event):
        stream = LiveStream(max_queue_size=2)
        subscription = stream.subscribe()
        events = [make_event(event_name=f"e{i}") for i in range(3)]

        stream.publish(events)

        assert subscription.dropped == 1
        assert (await subscription.get()).event_name == "e1"
        assert (await subscription.get()).event_name == "e2"

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, make_event):
        stream = LiveStream()
        with stream.subscribe() as subscription:
            assert stream.subscriber_count == 1

        assert subscription.closed
        assert stream.subscriber_count == 0
        stream.publish([make_event()])
        assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_async_iteration_drains_after_close(self, make_event):
        stream = LiveStream()
        subscription = stream.subscribe()
        stream.publish([make_event(event_name="a"), make_event(event_name="b")])
        subscription.close()

        names = [event.event_name async for event in subscription]

        assert names == ["a", "b"]

    @pytest.mark.asyncio
    async def test_waiting_consumer_receives_event(self, make_event):
        stream = LiveStream()
        subscription = stream.subscribe()

        consumer = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        stream.publish([make_event(event_name="late")])

        event = await asyncio.wait_for(consumer, timeout=1)
        assert event.event_name == "late"

    @pytest.mark.asyncio
    async def test_close_ends_waiting_iteration(self, make_event):
        stream = LiveStream()
        subscription = stream.subscribe()

        async def consume():
            return [event.event_name async for event in subscription]

        consumer = asyncio.create_task(consume())
        stream.publish([make_event(event_name="a")])
        await asyncio.sleep(0.01)
        subscription.close()

        assert await asyncio.wait_for(consumer, timeout=1) == ["a"]
        assert await subscription.get() is None
