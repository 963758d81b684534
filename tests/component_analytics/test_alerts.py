"""
Unit tests for alert evaluation, auto-resolution and notifications.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from component_analytics.alerts import (
    AlertEvaluator,
    NotificationDispatcher,
    compute_metric,
    condition_holds,
    spike_threshold,
)
from component_analytics.exceptions import StoreUnavailableError
from component_analytics.schemas import (
    Alert,
    AlertCondition,
    AlertMetric,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EventType,
    PerformanceBaseline,
)


def make_rule(**overrides) -> AlertRule:
    fields = dict(
        id="rule-1",
        component_id="comp-x",
        name="Too many errors",
        alert_type=AlertType.ERROR_RATE,
        metric=AlertMetric.ERROR_COUNT,
        condition=AlertCondition.GT,
        threshold=2,
        window_minutes=60,
        severity=AlertSeverity.CRITICAL,
    )
    fields.update(overrides)
    return AlertRule(**fields)


def make_baseline(hour_h, mean, metric=AlertMetric.ERROR_COUNT) -> PerformanceBaseline:
    return PerformanceBaseline(
        component_id="comp-x",
        metric=metric,
        mean=mean,
        stddev=0.0,
        p50=mean,
        p95=mean,
        p99=mean,
        sample_count=24,
        window_start=hour_h - timedelta(days=7),
        window_end=hour_h,
        computed_at=hour_h,
    )


def make_alert(hour_h) -> Alert:
    return Alert(
        id="alert-1",
        rule_id="rule-1",
        component_id="comp-x",
        alert_type=AlertType.ERROR_RATE,
        metric=AlertMetric.ERROR_RATE,
        severity=AlertSeverity.WARNING,
        current_value=0.25,
        expected_value=None,
        threshold_value=0.1,
        triggered_at=hour_h,
    )


class TestComputeMetric:
    """Test metric computation over a window of events."""

    def test_empty_window(self):
        assert compute_metric(AlertMetric.RENDER_COUNT, []) == 0.0
        assert compute_metric(AlertMetric.ERROR_COUNT, []) == 0.0
        assert compute_metric(AlertMetric.ERROR_RATE, []) == 0.0
        assert compute_metric(AlertMetric.AVG_RENDER_TIME, []) is None

    def test_error_rate_and_counts(self, make_event):
        events = [make_event() for _ in range(4)] + [make_event(EventType.ERROR, "TypeError")]

        assert compute_metric(AlertMetric.ERROR_RATE, events) == 0.25
        assert compute_metric(AlertMetric.ERROR_COUNT, events) == 1
        assert compute_metric(AlertMetric.RENDER_COUNT, events) == 4

    def test_error_rate_without_renders(self, make_event):
        events = [make_event(EventType.ERROR, "TypeError")]
        assert compute_metric(AlertMetric.ERROR_RATE, events) == 0.0

    def test_avg_render_time(self, make_event):
        events = [make_event(duration_ms=100), make_event(duration_ms=300), make_event()]

        assert compute_metric(AlertMetric.AVG_RENDER_TIME, events) == 200

    def test_avg_render_time_without_timings(self, make_event):
        events = [make_event(EventType.ERROR, "TypeError")]
        assert compute_metric(AlertMetric.AVG_RENDER_TIME, events) is None


class TestConditionHolds:
    """Test rule condition comparisons."""

    @pytest.mark.parametrize(
        "condition,current,expected",
        [
            (AlertCondition.GT, 5.0, False),
            (AlertCondition.GT, 5.1, True),
            (AlertCondition.GTE, 5.0, True),
            (AlertCondition.LT, 4.9, True),
            (AlertCondition.LTE, 5.0, True),
            (AlertCondition.LTE, 5.1, False),
            (AlertCondition.EQ, 5.0, True),
            (AlertCondition.EQ, 5.5, False),
        ],
    )
    def test_comparisons(self, condition, current, expected):
        assert condition_holds(condition, current, 5.0) is expected

    def test_missing_value_never_holds(self):
        for condition in AlertCondition:
            assert condition_holds(condition, None, 0.0) is False

    def test_spike_without_baseline_never_holds(self):
        assert condition_holds(AlertCondition.SPIKE, 1_000_000.0, 50) is False

    def test_spike_against_baseline(self, hour_h):
        baseline = make_baseline(hour_h, mean=10.0)

        assert spike_threshold(baseline, 50) == 15.0
        assert condition_holds(AlertCondition.SPIKE, 15.0, 50, baseline) is False
        assert condition_holds(AlertCondition.SPIKE, 15.5, 50, baseline) is True


class TestAlertEvaluator:
    """Test rule evaluation and the alert lifecycle."""

    @pytest.fixture
    def dispatcher(self):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(return_value=[])
        return dispatcher

    @pytest.fixture
    def evaluator(self, store, dispatcher):
        return AlertEvaluator(store, dispatcher)

    async def _insert_errors(self, store, make_event, count, sites=("site-1",)):
        events = [
            make_event(EventType.ERROR, "TypeError", site_id=sites[i % len(sites)], session_id=f"s{i}")
            for i in range(count)
        ]
        await store.insert_events(events)

    @pytest.mark.asyncio
    async def test_triggers_once(self, evaluator, store, dispatcher, hour_h, make_event):
        rule = make_rule()
        store.add_alert_rule(rule)
        await self._insert_errors(store, make_event, 3, sites=("site-1", "site-2"))
        now = hour_h + timedelta(minutes=30)

        first = await evaluator.evaluate_rules(now)
        second = await evaluator.evaluate_rules(now + timedelta(minutes=1))

        assert len(first) == 1
        assert second == []
        alert = first[0]
        assert alert.status == AlertStatus.ACTIVE
        assert alert.current_value == 3
        assert alert.threshold_value == 2
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.affected_sites == 2
        assert alert.affected_sessions == 3
        assert len(store.list_alerts()) == 1
        dispatcher.dispatch.assert_awaited_once_with(rule, alert)

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_create_one_alert(
        self, evaluator, store, dispatcher, hour_h, make_event
    ):
        rule = make_rule()
        store.add_alert_rule(rule)
        await self._insert_errors(store, make_event, 3)
        now = hour_h + timedelta(minutes=30)

        results = await asyncio.gather(
            evaluator.evaluate_rule(rule, now), evaluator.evaluate_rule(rule, now)
        )

        assert len([alert for alert in results if alert is not None]) == 1
        assert len(await store.list_open_alerts("comp-x")) == 1
        dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_condition_not_met(self, evaluator, store, dispatcher, hour_h, make_event):
        store.add_alert_rule(make_rule())
        await self._insert_errors(store, make_event, 2)

        assert await evaluator.evaluate_rules(hour_h + timedelta(minutes=30)) == []
        dispatcher.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_silent_component_fires(self, evaluator, store, dispatcher, hour_h):
        store.add_alert_rule(
            make_rule(metric=AlertMetric.RENDER_COUNT, condition=AlertCondition.LT, threshold=1)
        )

        (alert,) = await evaluator.evaluate_rules(hour_h)

        assert alert.current_value == 0.0
        assert alert.affected_sites == 0
        dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_silent_alert_stays_open_until_renders_return(
        self, evaluator, store, hour_h, make_event
    ):
        store.add_alert_rule(
            make_rule(metric=AlertMetric.RENDER_COUNT, condition=AlertCondition.LT, threshold=1)
        )
        (alert,) = await evaluator.evaluate_rules(hour_h)

        assert await evaluator.resolve_alerts(hour_h + timedelta(minutes=1)) == []

        await store.insert_events([make_event(minutes=2)])
        (resolved,) = await evaluator.resolve_alerts(hour_h + timedelta(minutes=3))
        assert resolved.id == alert.id

    @pytest.mark.asyncio
    async def test_untimed_window_never_fires(self, evaluator, store, hour_h):
        store.add_alert_rule(
            make_rule(metric=AlertMetric.AVG_RENDER_TIME, condition=AlertCondition.LT, threshold=1)
        )

        assert await evaluator.evaluate_rules(hour_h) == []

    @pytest.mark.asyncio
    async def test_acknowledged_alert_blocks_new_alert(self, evaluator, store, hour_h, make_event):
        store.add_alert_rule(make_rule())
        await self._insert_errors(store, make_event, 3)
        now = hour_h + timedelta(minutes=30)
        (alert,) = await evaluator.evaluate_rules(now)
        await store.acknowledge_alert(alert.id, now)

        assert await evaluator.evaluate_rules(now + timedelta(minutes=1)) == []
        assert len(store.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_spike_needs_baseline(self, evaluator, store, hour_h, make_event):
        store.add_alert_rule(
            make_rule(alert_type=AlertType.ERROR_SPIKE, condition=AlertCondition.SPIKE, threshold=100)
        )
        await self._insert_errors(store, make_event, 3)
        now = hour_h + timedelta(minutes=30)

        assert await evaluator.evaluate_rules(now) == []

        await store.upsert_baselines([make_baseline(hour_h, mean=1.0)])
        (alert,) = await evaluator.evaluate_rules(now)
        assert alert.expected_value == 1.0
        assert "baseline" in alert.message

    @pytest.mark.asyncio
    async def test_auto_resolves_when_cleared(self, evaluator, store, hour_h, make_event):
        store.add_alert_rule(make_rule())
        await self._insert_errors(store, make_event, 3)
        now = hour_h + timedelta(minutes=30)
        (alert,) = await evaluator.evaluate_rules(now)

        assert await evaluator.resolve_alerts(now) == []

        later = now + timedelta(hours=2)
        (resolved,) = await evaluator.resolve_alerts(later)
        assert resolved.id == alert.id
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.auto_resolved is True
        assert resolved.resolved_at == later
        assert await store.list_open_alerts() == []

    @pytest.mark.asyncio
    async def test_new_alert_after_resolution(self, evaluator, store, hour_h, make_event):
        store.add_alert_rule(make_rule())
        await self._insert_errors(store, make_event, 3)
        now = hour_h + timedelta(minutes=30)
        (first,) = await evaluator.evaluate_rules(now)
        await store.resolve_alert(first.id, now, auto_resolved=False)

        (second,) = await evaluator.evaluate_rules(now + timedelta(minutes=1))

        assert second.id != first.id
        assert len(store.list_alerts()) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("change", ["disable", "remove"])
    async def test_resolves_when_rule_gone(self, evaluator, store, hour_h, make_event, change):
        rule = make_rule()
        store.add_alert_rule(rule)
        await self._insert_errors(store, make_event, 3)
        now = hour_h + timedelta(minutes=30)
        await evaluator.evaluate_rules(now)

        if change == "disable":
            store.add_alert_rule(rule.model_copy(update={"enabled": False}))
        else:
            store.remove_alert_rule(rule.id)

        (resolved,) = await evaluator.resolve_alerts(now)
        assert resolved.auto_resolved is True

    @pytest.mark.asyncio
    async def test_store_failure_skips_rule(self, evaluator, store, hour_h):
        store.add_alert_rule(make_rule())

        with patch.object(
            store, "query_events", AsyncMock(side_effect=StoreUnavailableError("down"))
        ):
            assert await evaluator.evaluate_rules(hour_h) == []


class TestNotificationDispatcher:
    """Test notification payloads and delivery."""

    def test_payload_uses_camel_case(self, hour_h):
        body = NotificationDispatcher.build_payload(make_alert(hour_h)).model_dump(
            mode="json", by_alias=True
        )

        assert body["alertId"] == "alert-1"
        assert body["componentId"] == "comp-x"
        assert body["alertType"] == "error_rate"
        assert body["currentValue"] == 0.25
        assert body["expectedValue"] is None
        assert body["threshold"] == 0.1
        assert body["severity"] == "warning"

    @pytest.mark.asyncio
    async def test_webhook_delivery(self, hour_h):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(client=client)
            rule = make_rule(webhook_url="https://hooks.example.com/alerts")

            delivered = await dispatcher.dispatch(rule, make_alert(hour_h))

        assert delivered == ["webhook"]
        assert len(captured) == 1
        assert captured[0].method == "POST"
        assert json.loads(captured[0].content)["alertId"] == "alert-1"

    @pytest.mark.asyncio
    async def test_webhook_failure_is_swallowed(self, hour_h):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(client=client)
            rule = make_rule(webhook_url="https://hooks.example.com/alerts")

            assert await dispatcher.dispatch(rule, make_alert(hour_h)) == []

    @pytest.mark.asyncio
    async def test_email_delivery(self, hour_h):
        sender = MagicMock()
        sender.send = AsyncMock()
        dispatcher = NotificationDispatcher(email_sender=sender)
        rule = make_rule(notify_emails=["ops@example.com"])

        assert await dispatcher.dispatch(rule, make_alert(hour_h)) == ["email"]

        recipients, subject, body = sender.send.await_args.args
        assert recipients == ["ops@example.com"]
        assert "[WARNING]" in subject
        assert body["componentId"] == "comp-x"

    @pytest.mark.asyncio
    async def test_email_failure_is_swallowed(self, hour_h):
        sender = MagicMock()
        sender.send = AsyncMock(side_effect=RuntimeError("smtp down"))
        dispatcher = NotificationDispatcher(email_sender=sender)
        rule = make_rule(notify_emails=["ops@example.com"])

        assert await dispatcher.dispatch(rule, make_alert(hour_h)) == []

    @pytest.mark.asyncio
    async def test_email_without_sender_is_skipped(self, hour_h):
        rule = make_rule(notify_emails=["ops@example.com"])

        assert await NotificationDispatcher().dispatch(rule, make_alert(hour_h)) == []
