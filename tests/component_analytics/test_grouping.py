"""
Unit tests for error fingerprinting and grouping.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from component_analytics.grouping import (
    FINGERPRINT_LENGTH,
    MAX_STACK_CHARS,
    ErrorGrouper,
    compute_fingerprint,
    normalize_stack,
)
from component_analytics.schemas import ErrorEvent, ErrorGroupStatus

OCCURRED = datetime(2026, 3, 10, 10, 15, tzinfo=timezone.utc)

STACK_V1 = (
    "TypeError: x is undefined\n"
    "    at render (https://cdn.example.com/widget.js?v=123:10:5)\n"
    "    at mount (https://cdn.example.com/widget.js?v=123:44:12)"
)
STACK_V2 = (
    "TypeError: x is undefined\n"
    "    at render (https://cdn.example.com/widget.js?v=987:11:9)\n"
    "    at mount (https://cdn.example.com/widget.js?v=987:47:1)"
)


def make_error(**overrides) -> ErrorEvent:
    fields = dict(
        component_id="comp-x",
        site_id="site-1",
        error_type="runtime",
        error_name="TypeError",
        message="x is undefined",
        stack=STACK_V1,
        occurred_at=OCCURRED,
    )
    fields.update(overrides)
    return ErrorEvent(**fields)


class TestNormalizeStack:
    """Test stack normalization."""

    def test_replaces_line_and_column(self):
        assert normalize_stack("at f (app.js:10:20)") == "at f (app.js:X:X)"

    def test_strips_query_strings(self):
        assert normalize_stack("at f (app.js?v=abc:1:2)") == "at f (app.js:X:X)"

    def test_truncates(self):
        assert len(normalize_stack("a" * 2000)) == MAX_STACK_CHARS

    @pytest.mark.parametrize("stack", [None, ""])
    def test_missing_stack(self, stack):
        assert normalize_stack(stack) == ""


class TestComputeFingerprint:
    """Test fingerprint stability."""

    def test_line_numbers_and_query_strings_ignored(self):
        assert compute_fingerprint("runtime", "TypeError", STACK_V1) == compute_fingerprint(
            "runtime", "TypeError", STACK_V2
        )

    def test_different_error_names_differ(self):
        assert compute_fingerprint("runtime", "TypeError", STACK_V1) != compute_fingerprint(
            "runtime", "RangeError", STACK_V1
        )

    def test_length_and_charset(self):
        fingerprint = compute_fingerprint("runtime", "TypeError", None)
        assert len(fingerprint) == FINGERPRINT_LENGTH
        int(fingerprint, 16)  # hex

    def test_missing_stack_is_stable(self):
        assert compute_fingerprint("runtime", "E", None) == compute_fingerprint("runtime", "E", "")


class TestErrorGrouper:
    """Test merging occurrences into groups."""

    @pytest.fixture
    def grouper(self, store):
        return ErrorGrouper(store)

    @pytest.mark.asyncio
    async def test_first_occurrence_creates_group(self, grouper):
        group = await grouper.group(grouper.build_record(make_error(version_id="1.0.0")))

        assert group.occurrence_count == 1
        assert group.status == ErrorGroupStatus.OPEN
        assert group.first_seen == group.last_seen == OCCURRED
        assert group.affected_versions == ["1.0.0"]
        assert group.affected_sites_count == 1

    @pytest.mark.asyncio
    async def test_recurrence_increments(self, grouper):
        await grouper.group(grouper.build_record(make_error(version_id="1.0.0", session_id="s1")))
        later = OCCURRED + timedelta(minutes=30)
        group = await grouper.group(
            grouper.build_record(
                make_error(
                    stack=STACK_V2,
                    version_id="1.1.0",
                    site_id="site-2",
                    session_id="s2",
                    occurred_at=later,
                )
            )
        )

        assert group.occurrence_count == 2
        assert group.last_seen == later
        assert group.first_seen == OCCURRED
        assert sorted(group.affected_versions) == ["1.0.0", "1.1.0"]
        assert group.affected_sites_count == 2
        assert group.affected_sessions_count == 2

    @pytest.mark.asyncio
    async def test_resolved_group_reopens(self, grouper, store):
        group = await grouper.group(grouper.build_record(make_error()))
        await store.update_error_group(group.id, status=ErrorGroupStatus.RESOLVED)

        group = await grouper.group(grouper.build_record(make_error()))

        assert group.status == ErrorGroupStatus.OPEN
        assert group.occurrence_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ErrorGroupStatus.IGNORED, ErrorGroupStatus.INVESTIGATING])
    async def test_other_statuses_untouched(self, grouper, store, status):
        group = await grouper.group(grouper.build_record(make_error()))
        await store.update_error_group(group.id, status=status)

        group = await grouper.group(grouper.build_record(make_error()))

        assert group.status == status
        assert group.occurrence_count == 2

    @pytest.mark.asyncio
    async def test_distinct_errors_get_distinct_groups(self, grouper, store):
        await grouper.group(grouper.build_record(make_error()))
        await grouper.group(grouper.build_record(make_error(error_name="RangeError")))

        groups = await store.list_error_groups("comp-x")
        assert len(groups) == 2
        assert {g.occurrence_count for g in groups} == {1}

    @pytest.mark.asyncio
    async def test_concurrent_recurrences_counted_once_each(self, grouper, store):
        records = [
            grouper.build_record(
                make_error(session_id=f"s{i}", occurred_at=OCCURRED + timedelta(seconds=i))
            )
            for i in range(20)
        ]

        await asyncio.gather(*(grouper.group(record) for record in records))

        (group,) = await store.list_error_groups("comp-x")
        assert group.occurrence_count == 20
        assert group.affected_sessions_count == 20
        assert group.first_seen == OCCURRED
        assert group.last_seen == OCCURRED + timedelta(seconds=19)
