"""In-memory alert bus shared by the dispatch queue, registry and workflows."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from dental_comms.domain.models import Alert, AlertSeverity

logger = logging.getLogger(__name__)

AlertSubscriber = Callable[[Alert], None]
Clock = Callable[[], datetime]

DEFAULT_AUTO_RESOLVE_AFTER: dict[AlertSeverity, timedelta] = {
    AlertSeverity.LOW: timedelta(minutes=5),
    AlertSeverity.MEDIUM: timedelta(minutes=30),
    AlertSeverity.HIGH: timedelta(hours=4),
    AlertSeverity.CRITICAL: timedelta(hours=24),
}

# Resolved alerts stay listed this long before a sweep drops them.
DEFAULT_RESOLVED_RETENTION = timedelta(hours=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AlertBus:
    """Publishes alerts to subscribers and keeps them until resolved or expired.

    Subscribers are called outside the lock; one failing subscriber is logged
    and does not stop delivery to the others.
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        auto_resolve_after: dict[AlertSeverity, timedelta] | None = None,
        resolved_retention: timedelta = DEFAULT_RESOLVED_RETENTION,
    ) -> None:
        self._clock = clock
        self._auto_resolve_after = dict(auto_resolve_after or DEFAULT_AUTO_RESOLVE_AFTER)
        self._resolved_retention = resolved_retention
        self._alerts: dict[str, Alert] = {}
        self._subscribers: list[AlertSubscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: AlertSubscriber) -> Callable[[], None]:
        """Register a subscriber; the returned callable unsubscribes it."""
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            self.unsubscribe(subscriber)

        return unsubscribe

    def unsubscribe(self, subscriber: AlertSubscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(
        self,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Alert:
        alert = Alert(
            alert_id=uuid.uuid4().hex,
            alert_type=alert_type,
            severity=severity,
            message=message,
            created_at=self._clock(),
            details=dict(details or {}),
        )
        with self._lock:
            self._alerts[alert.alert_id] = alert
            subscribers = list(self._subscribers)

        log = logger.error if severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL) else logger.warning
        log("Alert %s [%s]: %s", alert_type, severity.value, message)

        for subscriber in subscribers:
            try:
                subscriber(alert)
            except Exception:
                logger.exception("Alert subscriber %r failed for alert %s", subscriber, alert.alert_id)
        return alert

    def resolve(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            if not alert.resolved:
                alert.resolved = True
                alert.resolved_at = self._clock()
            return True

    def sweep(self, now: datetime | None = None) -> int:
        """Auto-resolve alerts whose severity timeout has elapsed, then drop stale resolved ones."""
        now = now or self._clock()
        resolved = 0
        with self._lock:
            for alert in self._alerts.values():
                if alert.resolved:
                    continue
                if now - alert.created_at >= self._auto_resolve_after[alert.severity]:
                    alert.resolved = True
                    alert.resolved_at = now
                    resolved += 1
        if resolved:
            logger.info("Auto-resolved %s alert(s)", resolved)
        dropped = self.clear_resolved(before=now - self._resolved_retention)
        if dropped:
            logger.info("Dropped %s resolved alert(s)", dropped)
        return resolved

    def active_alerts(self) -> list[Alert]:
        with self._lock:
            return sorted(
                (alert for alert in self._alerts.values() if not alert.resolved),
                key=lambda alert: alert.created_at,
            )

    def alerts(self, alert_type: str | None = None) -> list[Alert]:
        with self._lock:
            selected = [
                alert
                for alert in self._alerts.values()
                if alert_type is None or alert.alert_type == alert_type
            ]
        return sorted(selected, key=lambda alert: alert.created_at)

    def clear_resolved(self, before: datetime | None = None) -> int:
        """Forget resolved alerts; with ``before``, only those resolved at or before it."""
        with self._lock:
            stale = [
                alert_id
                for alert_id, alert in self._alerts.items()
                if alert.resolved and (before is None or alert.resolved_at is None or alert.resolved_at <= before)
            ]
            for alert_id in stale:
                del self._alerts[alert_id]
        return len(stale)
