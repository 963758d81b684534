"""
Shared fixtures for component analytics tests.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from component_analytics.schemas import Event, EventType
from component_analytics.storage import InMemoryEventStore

HOUR_H = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """Fresh in-memory event store."""
    return InMemoryEventStore()


@pytest.fixture
def hour_h():
    """Start of a fixed, fully elapsed hour bucket."""
    return HOUR_H


@pytest.fixture
def make_event():
    """Factory for raw events inside hour H unless told otherwise."""

    def _make(
        event_type=EventType.RENDER,
        event_name="mount",
        component_id="comp-x",
        site_id="site-1",
        version_id=None,
        duration_ms=None,
        memory_kb=None,
        session_id=None,
        country_code=None,
        created_at=None,
        minutes=5,
    ):
        return Event(
            id=str(uuid.uuid4()),
            component_id=component_id,
            version_id=version_id,
            site_id=site_id,
            event_type=event_type,
            event_name=event_name,
            duration_ms=duration_ms,
            memory_kb=memory_kb,
            session_id=session_id,
            country_code=country_code,
            created_at=created_at or HOUR_H + timedelta(minutes=minutes),
        )

    return _make
