from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import NOW, make_channel
from dental_comms.alerts.bus import AlertBus
from dental_comms.channels.registry import ChannelRegistry
from dental_comms.domain.errors import ChannelInUse, NoChannelAvailable, UnknownChannel
from dental_comms.domain.models import (
    AlertSeverity,
    ChannelEvent,
    ChannelEventKind,
    ChannelPurpose,
    ChannelStatus,
)


def test_allocate_prefers_lowest_usage_ratio(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("a", daily_limit=100, daily_message_count=50))
    registry.register(make_channel("b", daily_limit=1000, daily_message_count=100))

    allocated = registry.allocate(ChannelPurpose.REMINDERS)

    assert allocated.channel_id == "b"
    assert allocated.daily_message_count == 101
    assert registry.get("b").daily_message_count == 101


def test_allocate_breaks_ties_by_channel_id(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("z"))
    registry.register(make_channel("m"))

    assert registry.allocate(ChannelPurpose.REMINDERS).channel_id == "m"


def test_allocate_prefers_country_hint_then_falls_back(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("py", country="PY", daily_message_count=900))
    registry.register(make_channel("cl", country="CL"))

    assert registry.allocate(ChannelPurpose.REMINDERS, country="PY").channel_id == "py"
    assert registry.allocate(ChannelPurpose.REMINDERS, country="BO").channel_id == "cl"


def test_allocate_skips_wrong_purpose_and_unhealthy_channels(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("int", purpose=ChannelPurpose.INTEGRATION))
    registry.register(make_channel("blocked", status=ChannelStatus.BLOCKED))
    registry.register(make_channel("warn", status=ChannelStatus.WARNING))

    with pytest.raises(NoChannelAvailable):
        registry.allocate(ChannelPurpose.REMINDERS)


def test_exhausted_channels_raise_and_alert_once_per_day(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("full", daily_limit=2, daily_message_count=2))

    for _ in range(3):
        with pytest.raises(NoChannelAvailable):
            registry.allocate(ChannelPurpose.REMINDERS)

    limit_alerts = alert_bus.alerts("limit_reached")
    assert len(limit_alerts) == 1
    assert limit_alerts[0].details["channel_id"] == "full"


def test_concurrent_allocations_never_exceed_limit(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("a", daily_limit=25))
    registry.register(make_channel("b", daily_limit=25))
    allocated: list[str] = []
    rejected: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(10):
            try:
                channel = registry.allocate(ChannelPurpose.REMINDERS)
            except NoChannelAvailable:
                with lock:
                    rejected.append("x")
                continue
            with lock:
                allocated.append(channel.channel_id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(allocated) == 50
    assert len(rejected) == 30
    for channel in registry.channels():
        assert channel.daily_message_count == channel.daily_limit


def test_record_usage_counts_and_refuses_past_limit(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("manual", daily_limit=2, daily_message_count=1))

    assert registry.record_usage("manual").daily_message_count == 2
    with pytest.raises(NoChannelAvailable):
        registry.record_usage("manual")

    assert registry.get("manual").daily_message_count == 2
    assert len(alert_bus.alerts("limit_reached")) == 1
    with pytest.raises(UnknownChannel):
        registry.record_usage("ghost")


def test_reset_daily_counters_is_idempotent_within_a_day(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("a", daily_message_count=10, last_reset_at=NOW - timedelta(days=1)))

    assert registry.reset_daily_counters(NOW) == 1
    assert registry.get("a").daily_message_count == 0

    registry.allocate(ChannelPurpose.REMINDERS)
    assert registry.reset_daily_counters(NOW + timedelta(hours=1)) == 0
    assert registry.get("a").daily_message_count == 1

    assert registry.reset_daily_counters(NOW + timedelta(days=1)) == 1


def test_blocked_event_only_cleared_by_connected(registry: ChannelRegistry, alert_bus: AlertBus) -> None:
    registry.apply_event(ChannelEvent("rem-1", ChannelEventKind.BLOCKED, detail="statusReason=403"))
    assert registry.get("rem-1").status is ChannelStatus.BLOCKED

    registry.apply_event(ChannelEvent("rem-1", ChannelEventKind.WARNING))
    assert registry.get("rem-1").status is ChannelStatus.BLOCKED

    registry.apply_event(ChannelEvent("rem-1", ChannelEventKind.CONNECTED))
    assert registry.get("rem-1").status is ChannelStatus.ACTIVE

    blocked = alert_bus.alerts("channel_blocked")
    assert len(blocked) == 1
    assert blocked[0].severity is AlertSeverity.CRITICAL


def test_event_resolves_instance_name(alert_bus: AlertBus, clock) -> None:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("ch-1", instance_name="clinica-py-01"))

    updated = registry.apply_event(ChannelEvent("clinica-py-01", ChannelEventKind.DISCONNECTED))

    assert updated.channel_id == "ch-1"
    assert updated.status is ChannelStatus.INACTIVE


def test_event_for_unknown_channel_raises(registry: ChannelRegistry) -> None:
    with pytest.raises(UnknownChannel):
        registry.apply_event(ChannelEvent("ghost", ChannelEventKind.CONNECTED))


def test_consecutive_failures_degrade_channel(registry: ChannelRegistry, alert_bus: AlertBus) -> None:
    registry.record_outcome("rem-1", success=False, error="HTTP 500")
    registry.record_outcome("rem-1", success=False, error="HTTP 500")
    assert registry.get("rem-1").status is ChannelStatus.ACTIVE

    registry.record_outcome("rem-1", success=True)
    assert registry.get("rem-1").consecutive_failures == 0

    for _ in range(3):
        registry.record_outcome("rem-1", success=False, error="HTTP 500")

    channel = registry.get("rem-1")
    assert channel.status is ChannelStatus.WARNING
    assert channel.last_error == "HTTP 500"
    assert len(alert_bus.alerts("channel_degraded")) == 1


def test_remove_requires_inactive_channel(registry: ChannelRegistry) -> None:
    with pytest.raises(ChannelInUse):
        registry.remove("rem-1")

    registry.mark_status("rem-1", ChannelStatus.INACTIVE)
    registry.remove("rem-1")

    with pytest.raises(UnknownChannel):
        registry.get("rem-1")


def test_channel_health_snapshot(registry: ChannelRegistry) -> None:
    registry.allocate(ChannelPurpose.REMINDERS)

    health = {entry["channel_id"]: entry for entry in registry.get_channel_health()}

    assert health["rem-1"]["daily_message_count"] == 1
    assert health["rem-1"]["remaining_quota"] == 999
    assert health["rem-1"]["usage_ratio"] == 0.001
    assert health["int-1"]["purpose"] == "integration"
