from __future__ import annotations

from datetime import timedelta

from dental_comms.alerts.bus import AlertBus
from dental_comms.domain.models import Alert, AlertSeverity


def test_subscribers_receive_until_unsubscribed(alert_bus: AlertBus) -> None:
    received: list[Alert] = []
    unsubscribe = alert_bus.subscribe(received.append)

    alert_bus.publish("reminder_failed", AlertSeverity.CRITICAL, "first")
    unsubscribe()
    alert_bus.publish("reminder_failed", AlertSeverity.CRITICAL, "second")

    assert [alert.message for alert in received] == ["first"]
    assert alert_bus.subscriber_count == 0


def test_failing_subscriber_does_not_block_others(alert_bus: AlertBus) -> None:
    received: list[str] = []

    def broken(_alert: Alert) -> None:
        raise RuntimeError("socket closed")

    alert_bus.subscribe(broken)
    alert_bus.subscribe(lambda alert: received.append(alert.alert_type))

    alert_bus.publish("limit_reached", AlertSeverity.MEDIUM, "quota")

    assert received == ["limit_reached"]


def test_low_severity_auto_resolves_after_five_minutes(alert_bus: AlertBus, clock) -> None:
    low = alert_bus.publish("network_error", AlertSeverity.LOW, "blip")
    critical = alert_bus.publish("reminder_failed", AlertSeverity.CRITICAL, "down")

    clock.advance(minutes=4)
    assert alert_bus.sweep() == 0

    clock.advance(minutes=1)
    assert alert_bus.sweep() == 1

    active_ids = [alert.alert_id for alert in alert_bus.active_alerts()]
    assert low.alert_id not in active_ids
    assert critical.alert_id in active_ids


def test_manual_resolve_and_clear(alert_bus: AlertBus) -> None:
    alert = alert_bus.publish("channel_blocked", AlertSeverity.CRITICAL, "banned")

    assert alert_bus.resolve(alert.alert_id) is True
    assert alert_bus.resolve("missing") is False
    assert alert_bus.active_alerts() == []
    assert alert_bus.clear_resolved() == 1
    assert alert_bus.alerts() == []


def test_sweep_drops_resolved_alerts_after_retention(clock) -> None:
    bus = AlertBus(clock=clock, resolved_retention=timedelta(hours=1))
    bus.publish("network_error", AlertSeverity.LOW, "blip")
    kept = bus.publish("reminder_failed", AlertSeverity.CRITICAL, "down")

    clock.advance(minutes=5)
    assert bus.sweep() == 1
    assert len(bus.alerts()) == 2

    clock.advance(hours=1)
    bus.sweep()

    assert [alert.alert_id for alert in bus.alerts()] == [kept.alert_id]


def test_clear_resolved_before_keeps_recent(alert_bus: AlertBus, clock) -> None:
    old = alert_bus.publish("channel_blocked", AlertSeverity.CRITICAL, "banned")
    alert_bus.resolve(old.alert_id)
    clock.advance(hours=2)
    recent = alert_bus.publish("channel_blocked", AlertSeverity.CRITICAL, "banned again")
    alert_bus.resolve(recent.alert_id)

    assert alert_bus.clear_resolved(before=clock.now - timedelta(hours=1)) == 1
    assert [alert.alert_id for alert in alert_bus.alerts()] == [recent.alert_id]
