"""
Alert rule evaluation, auto-resolution and notification dispatch.

This module's logger ("component_analytics.alerts") is routed to its own log
file by logging_config, giving operators a single stream of alert activity.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import httpx

from component_analytics.base import PeriodicTask
from component_analytics.config import AlertSettings
from component_analytics.exceptions import StoreUnavailableError
from component_analytics.logging_config import log_alert_transition
from component_analytics.protocols import EmailSender, EventStore
from component_analytics.schemas import (
    Alert,
    AlertCondition,
    AlertMetric,
    AlertRule,
    Event,
    EventType,
    NotificationPayload,
    PerformanceBaseline,
)
from component_analytics.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

_CONDITION_SYMBOLS = {
    AlertCondition.GT: ">",
    AlertCondition.GTE: ">=",
    AlertCondition.LT: "<",
    AlertCondition.LTE: "<=",
    AlertCondition.EQ: "==",
}


def compute_metric(metric: AlertMetric, events: Sequence[Event]) -> Optional[float]:
    """
    Compute a rule metric over a window of raw events.

    An empty window is a real measurement: counts and error_rate are 0.

    Returns:
        The metric value, or None for avg_render_time when no render was timed
    """
    renders = [e for e in events if e.event_type == EventType.RENDER]
    errors = sum(1 for e in events if e.event_type == EventType.ERROR)

    if metric == AlertMetric.ERROR_RATE:
        return errors / len(renders) if renders else 0.0
    if metric == AlertMetric.ERROR_COUNT:
        return float(errors)
    if metric == AlertMetric.RENDER_COUNT:
        return float(len(renders))
    if metric == AlertMetric.AVG_RENDER_TIME:
        times = [e.duration_ms for e in renders if e.duration_ms is not None]
        return sum(times) / len(times) if times else None
    raise ValueError(f"Unsupported metric: {metric}")


def spike_threshold(baseline: PerformanceBaseline, threshold: float) -> float:
    """Value above which a spike condition fires: mean raised by threshold percent."""
    return baseline.mean * (1 + threshold / 100)


def condition_holds(
    condition: AlertCondition,
    current: Optional[float],
    threshold: float,
    baseline: Optional[PerformanceBaseline] = None,
) -> bool:
    """
    Evaluate a rule condition.

    A missing current value never holds. A spike condition without a baseline
    never holds.
    """
    if current is None:
        return False

    if condition == AlertCondition.SPIKE:
        if baseline is None:
            return False
        return current > spike_threshold(baseline, threshold)
    if condition == AlertCondition.GT:
        return current > threshold
    if condition == AlertCondition.GTE:
        return current >= threshold
    if condition == AlertCondition.LT:
        return current < threshold
    if condition == AlertCondition.LTE:
        return current <= threshold
    if condition == AlertCondition.EQ:
        return math.isclose(current, threshold, rel_tol=1e-9, abs_tol=1e-9)
    raise ValueError(f"Unsupported condition: {condition}")


def describe_trigger(
    rule: AlertRule, current: float, baseline: Optional[PerformanceBaseline]
) -> str:
    label = rule.name or rule.metric.value
    if rule.condition == AlertCondition.SPIKE and baseline is not None:
        return (
            f"{label}: {rule.metric.value} {current:.4g} exceeds baseline "
            f"{baseline.mean:.4g} by more than {rule.threshold:g}%"
        )
    symbol = _CONDITION_SYMBOLS[rule.condition]
    return f"{label}: {rule.metric.value} {current:.4g} {symbol} {rule.threshold:g}"


# ============================================================================
# NOTIFICATIONS
# ============================================================================


class NotificationDispatcher:
    """
    Hands alert payloads to the delivery layer.

    Webhooks are POSTed directly with httpx; email goes through the host's
    EmailSender. Delivery failures are logged and never propagate.
    """

    def __init__(
        self,
        email_sender: Optional[EmailSender] = None,
        webhook_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            email_sender: Email transport (email targets are skipped without one)
            webhook_timeout: Timeout in seconds for webhook requests
            client: Shared HTTP client (a short-lived one is created per call otherwise)
        """
        self.email_sender = email_sender
        self.webhook_timeout = webhook_timeout
        self._client = client

    @staticmethod
    def build_payload(alert: Alert) -> NotificationPayload:
        return NotificationPayload(
            alert_id=alert.id,
            component_id=alert.component_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            metric=alert.metric,
            current_value=alert.current_value,
            expected_value=alert.expected_value,
            threshold=alert.threshold_value,
            timestamp=alert.triggered_at,
        )

    async def dispatch(self, rule: AlertRule, alert: Alert) -> List[str]:
        """
        Deliver one alert to every target configured on its rule.

        Returns:
            Channels that accepted the notification ("webhook", "email")
        """
        body = self.build_payload(alert).model_dump(mode="json", by_alias=True)
        delivered = []

        if rule.webhook_url:
            if await self._post_webhook(rule.webhook_url, body):
                delivered.append("webhook")

        if rule.notify_emails:
            if self.email_sender is None:
                logger.warning(
                    f"Alert {alert.id} has email targets but no email sender is configured"
                )
            elif await self._send_email(rule, alert, body):
                delivered.append("email")

        return delivered

    async def _post_webhook(self, url: str, body: dict) -> bool:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=self.webhook_timeout)
            else:
                async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                    response = await client.post(url, json=body)
            response.raise_for_status()
            logger.info(f"Webhook delivered for alert {body['alertId']}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery failed for alert {body['alertId']}: {e}")
            return False

    async def _send_email(self, rule: AlertRule, alert: Alert, body: dict) -> bool:
        subject = (
            f"[{alert.severity.value.upper()}] {rule.name or alert.metric.value} "
            f"on component {alert.component_id}"
        )
        try:
            await self.email_sender.send(rule.notify_emails, subject, body)
            logger.info(f"Email sent for alert {alert.id} to {len(rule.notify_emails)} recipients")
            return True
        except Exception as e:
            logger.error(f"Email delivery failed for alert {alert.id}: {e}")
            return False


# ============================================================================
# EVALUATION
# ============================================================================


class AlertEvaluator:
    """Evaluates enabled rules against recent events and manages alert lifecycle."""

    def __init__(self, store: EventStore, dispatcher: Optional[NotificationDispatcher] = None):
        self.store = store
        self.dispatcher = dispatcher or NotificationDispatcher()

    async def _measure(self, rule: AlertRule, now: datetime) -> tuple:
        """Current value, baseline and window events for a rule."""
        start = now - timedelta(minutes=rule.window_minutes)
        events = await self.store.query_events(rule.component_id, start, now)
        current = compute_metric(rule.metric, events)

        baseline = None
        if rule.condition == AlertCondition.SPIKE:
            baseline = await self.store.get_baseline(rule.component_id, None, rule.metric)
        return current, baseline, events

    async def evaluate_rule(self, rule: AlertRule, now: Optional[datetime] = None) -> Optional[Alert]:
        """
        Evaluate one rule and create an alert if it newly triggers.

        Returns:
            The newly created alert, or None when the condition does not hold or
            an alert is already open for the rule's key
        """
        now = now or datetime.now(timezone.utc)
        current, baseline, events = await self._measure(rule, now)

        if not condition_holds(rule.condition, current, rule.threshold, baseline):
            return None

        candidate = Alert(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            component_id=rule.component_id,
            alert_type=rule.alert_type,
            metric=rule.metric,
            severity=rule.severity,
            current_value=current,
            expected_value=baseline.mean if baseline else None,
            threshold_value=rule.threshold,
            affected_sites=len({e.site_id for e in events}),
            affected_sessions=len({e.session_id for e in events if e.session_id}),
            message=describe_trigger(rule, current, baseline),
            triggered_at=now,
        )

        alert, created = await self.store.create_alert_if_absent(candidate)
        if not created:
            logger.debug(f"Rule {rule.id} still triggered; alert {alert.id} already open")
            return None

        log_alert_transition(
            "triggered",
            alert.id,
            alert.component_id,
            f"[{alert.severity.value}] {sanitize_for_log(alert.message, 300)}",
            rule_id=rule.id,
            level="WARNING",
        )
        await self.dispatcher.dispatch(rule, alert)
        return alert

    async def evaluate_rules(self, now: Optional[datetime] = None) -> List[Alert]:
        """
        Evaluate every enabled rule once.

        A store failure on one rule is logged and the pass moves on to the next.

        Returns:
            Alerts created during this pass
        """
        now = now or datetime.now(timezone.utc)
        rules = await self.store.list_enabled_alert_rules()

        created = []
        for rule in rules:
            try:
                alert = await self.evaluate_rule(rule, now)
            except StoreUnavailableError as e:
                logger.error(f"Skipping rule {rule.id} this pass: {e}")
                continue
            if alert:
                created.append(alert)

        logger.debug(f"Evaluated {len(rules)} rules, {len(created)} new alerts")
        return created

    async def resolve_alerts(self, now: Optional[datetime] = None) -> List[Alert]:
        """
        Re-check every open alert and auto-resolve those whose condition cleared.

        Alerts whose rule was deleted or disabled are resolved as well.

        Returns:
            Alerts resolved during this pass
        """
        now = now or datetime.now(timezone.utc)
        open_alerts = await self.store.list_open_alerts()

        resolved = []
        for alert in open_alerts:
            try:
                rule = await self.store.get_alert_rule(alert.rule_id)
                if rule is not None and rule.enabled:
                    current, baseline, _ = await self._measure(rule, now)
                    if condition_holds(rule.condition, current, rule.threshold, baseline):
                        continue
                    reason = "condition cleared"
                else:
                    reason = "rule removed or disabled"

                updated = await self.store.resolve_alert(alert.id, now, auto_resolved=True)
            except StoreUnavailableError as e:
                logger.error(f"Could not re-check alert {alert.id}: {e}")
                continue

            if updated:
                log_alert_transition(
                    "auto-resolved", alert.id, alert.component_id, reason, rule_id=alert.rule_id
                )
                resolved.append(updated)

        return resolved


class EvaluationScheduler(PeriodicTask):
    """Runs rule evaluation then auto-resolution on a fixed interval."""

    def __init__(self, evaluator: AlertEvaluator, settings: Optional[AlertSettings] = None):
        settings = settings or AlertSettings()
        super().__init__("alert-evaluation", settings.evaluation_interval_seconds)
        self.evaluator = evaluator

    async def run_once(self) -> None:
        await self.evaluator.evaluate_rules()
        await self.evaluator.resolve_alerts()
