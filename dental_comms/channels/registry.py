"""Pool of WhatsApp sending channels with per-channel daily quotas.

Each channel has its own lock. Allocation reads a snapshot of every channel,
ranks the candidates, then re-checks the winner under its lock before taking
one unit of quota, so two concurrent allocations can never push a channel past
its daily limit.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

from dental_comms.alerts.bus import AlertBus, Clock, utc_now
from dental_comms.domain.errors import ChannelInUse, NoChannelAvailable, UnknownChannel
from dental_comms.domain.models import (
    AlertSeverity,
    Channel,
    ChannelEvent,
    ChannelEventKind,
    ChannelPurpose,
    ChannelStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3

# Provider event -> resulting channel status.
EVENT_TRANSITIONS: dict[ChannelEventKind, ChannelStatus] = {
    ChannelEventKind.CONNECTED: ChannelStatus.ACTIVE,
    ChannelEventKind.DISCONNECTED: ChannelStatus.INACTIVE,
    ChannelEventKind.BLOCKED: ChannelStatus.BLOCKED,
    ChannelEventKind.WARNING: ChannelStatus.WARNING,
}

EVENT_ALERTS: dict[ChannelEventKind, tuple[str, AlertSeverity]] = {
    ChannelEventKind.DISCONNECTED: ("channel_disconnected", AlertSeverity.HIGH),
    ChannelEventKind.BLOCKED: ("channel_blocked", AlertSeverity.CRITICAL),
    ChannelEventKind.WARNING: ("channel_warning", AlertSeverity.MEDIUM),
}

PendingAlert = tuple[str, AlertSeverity, str, dict[str, Any]]


class ChannelRegistry:
    def __init__(
        self,
        alert_bus: AlertBus | None = None,
        clock: Clock = utc_now,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    ) -> None:
        self.alert_bus = alert_bus
        self._clock = clock
        self.failure_threshold = failure_threshold
        self._channels: dict[str, Channel] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._limit_alerted: dict[str, date] = {}
        self._registry_lock = threading.Lock()

    # -- membership -------------------------------------------------------

    def register(self, channel: Channel) -> Channel:
        with self._registry_lock:
            if channel.last_reset_at is None:
                channel.last_reset_at = self._clock()
            self._channels[channel.channel_id] = channel
            self._locks.setdefault(channel.channel_id, threading.Lock())
        logger.info(
            "Registered channel %s (%s, %s, limit %s)",
            channel.channel_id,
            channel.country,
            channel.purpose.value,
            channel.daily_limit,
        )
        return replace(channel)

    def get(self, channel_id: str) -> Channel:
        channel, lock = self._lookup(channel_id)
        with lock:
            return replace(channel)

    def channels(self, purpose: ChannelPurpose | None = None) -> list[Channel]:
        snapshot: list[Channel] = []
        for channel, lock in self._members():
            with lock:
                if purpose is None or channel.purpose is purpose:
                    snapshot.append(replace(channel))
        return sorted(snapshot, key=lambda channel: channel.channel_id)

    def find_by_instance(self, ref: str) -> Channel | None:
        """Resolve a provider reference that may be a channel id or an instance name."""
        with self._registry_lock:
            if ref in self._channels:
                return replace(self._channels[ref])
            for channel in self._channels.values():
                if channel.instance_name == ref:
                    return replace(channel)
        return None

    def remove(self, channel_id: str) -> None:
        channel, lock = self._lookup(channel_id)
        with lock:
            if channel.status is not ChannelStatus.INACTIVE:
                raise ChannelInUse(f"Channel {channel_id} is {channel.status.value}; disconnect it before removal")
        with self._registry_lock:
            self._channels.pop(channel_id, None)
            self._locks.pop(channel_id, None)
            self._limit_alerted.pop(channel_id, None)
        logger.info("Removed channel %s", channel_id)

    # -- quota ------------------------------------------------------------

    def allocate(self, purpose: ChannelPurpose, country: str | None = None) -> Channel:
        """Pick the least-used healthy channel and reserve one message of its quota."""
        alerts: list[PendingAlert] = []
        candidates: list[tuple[int, float, str]] = []

        for channel, lock in self._members():
            with lock:
                if channel.purpose is not purpose:
                    continue
                if channel.can_send():
                    preference = 0 if country and channel.country == country else 1
                    candidates.append((preference, channel.usage_ratio, channel.channel_id))
                elif channel.status is ChannelStatus.ACTIVE:
                    alerts.extend(self._limit_reached(channel))

        allocated: Channel | None = None
        for _, _, channel_id in sorted(candidates):
            try:
                channel, lock = self._lookup(channel_id)
            except UnknownChannel:
                continue
            with lock:
                if not channel.can_send():
                    continue
                channel.daily_message_count += 1
                if channel.daily_message_count >= channel.daily_limit:
                    alerts.extend(self._limit_reached(channel))
                allocated = replace(channel)
                break

        self._publish(alerts)
        if allocated is None:
            raise NoChannelAvailable(purpose.value, country)
        return allocated

    def record_usage(self, channel_id: str) -> Channel:
        """Count a message sent outside ``allocate``; refuses to exceed the limit."""
        channel, lock = self._lookup(channel_id)
        alerts: list[PendingAlert] = []
        with lock:
            if channel.daily_message_count >= channel.daily_limit:
                alerts.extend(self._limit_reached(channel))
                snapshot = None
            else:
                channel.daily_message_count += 1
                snapshot = replace(channel)
        self._publish(alerts)
        if snapshot is None:
            raise NoChannelAvailable(channel.purpose.value, channel.country)
        return snapshot

    def reset_daily_counters(self, now: datetime | None = None) -> int:
        """Zero counters for channels whose local calendar day changed since the last reset."""
        now = now or self._clock()
        reset = 0
        for channel, lock in self._members():
            with lock:
                zone = ZoneInfo(channel.timezone)
                today = now.astimezone(zone).date()
                if channel.last_reset_at is not None and channel.last_reset_at.astimezone(zone).date() >= today:
                    continue
                channel.daily_message_count = 0
                channel.last_reset_at = now
                reset += 1
        if reset:
            logger.info("Reset daily counters for %s channel(s)", reset)
        return reset

    # -- health -----------------------------------------------------------

    def mark_status(self, channel_id: str, status: ChannelStatus, reason: str | None = None) -> Channel:
        channel, lock = self._lookup(channel_id)
        with lock:
            previous = channel.status
            channel.status = status
            if status is ChannelStatus.ACTIVE:
                channel.consecutive_failures = 0
            if reason:
                channel.last_error = reason
            snapshot = replace(channel)
        if previous is not status:
            logger.info("Channel %s status %s -> %s", channel_id, previous.value, status.value)
        return snapshot

    def apply_event(self, event: ChannelEvent) -> Channel:
        """Apply a provider status callback through the transition table."""
        found = self.find_by_instance(event.channel_ref)
        if found is None:
            raise UnknownChannel(f"No channel matches provider reference {event.channel_ref!r}")
        channel, lock = self._lookup(found.channel_id)

        target = EVENT_TRANSITIONS[event.kind]
        with lock:
            previous = channel.status
            # Only an explicit reconnect or disconnect moves a channel out of blocked.
            if previous is ChannelStatus.BLOCKED and event.kind is ChannelEventKind.WARNING:
                target = previous
            channel.status = target
            if event.kind is ChannelEventKind.CONNECTED:
                channel.consecutive_failures = 0
                channel.last_error = None
            elif event.detail:
                channel.last_error = event.detail
            snapshot = replace(channel)

        if previous is not target:
            logger.info(
                "Channel %s %s event: %s -> %s",
                snapshot.channel_id,
                event.kind.value,
                previous.value,
                target.value,
            )
            alert = EVENT_ALERTS.get(event.kind)
            if alert is not None:
                alert_type, severity = alert
                self._publish(
                    [
                        (
                            alert_type,
                            severity,
                            f"Channel {snapshot.display_name} is now {target.value}",
                            {"channel_id": snapshot.channel_id, "detail": event.detail},
                        )
                    ]
                )
        return snapshot

    def record_outcome(self, channel_id: str, success: bool, error: str | None = None) -> Channel:
        """Track consecutive send failures; degrade the channel at the threshold."""
        channel, lock = self._lookup(channel_id)
        alerts: list[PendingAlert] = []
        with lock:
            if success:
                channel.consecutive_failures = 0
            else:
                channel.consecutive_failures += 1
                channel.last_error = error
                if (
                    channel.status is ChannelStatus.ACTIVE
                    and channel.consecutive_failures >= self.failure_threshold
                ):
                    channel.status = ChannelStatus.WARNING
                    alerts.append(
                        (
                            "channel_degraded",
                            AlertSeverity.HIGH,
                            f"Channel {channel.display_name} failed {channel.consecutive_failures} sends in a row",
                            {"channel_id": channel.channel_id, "last_error": error},
                        )
                    )
            snapshot = replace(channel)
        self._publish(alerts)
        return snapshot

    def get_channel_health(self) -> list[dict[str, Any]]:
        health: list[dict[str, Any]] = []
        for channel in self.channels():
            health.append(
                {
                    "channel_id": channel.channel_id,
                    "display_name": channel.display_name,
                    "country": channel.country,
                    "purpose": channel.purpose.value,
                    "status": channel.status.value,
                    "daily_message_count": channel.daily_message_count,
                    "daily_limit": channel.daily_limit,
                    "remaining_quota": channel.remaining_quota,
                    "usage_ratio": round(channel.usage_ratio, 4),
                    "consecutive_failures": channel.consecutive_failures,
                    "last_error": channel.last_error,
                    "last_reset_at": channel.last_reset_at.isoformat() if channel.last_reset_at else None,
                }
            )
        return health

    # -- internals --------------------------------------------------------

    def _lookup(self, channel_id: str) -> tuple[Channel, threading.Lock]:
        with self._registry_lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                raise UnknownChannel(f"Unknown channel {channel_id!r}")
            return channel, self._locks[channel_id]

    def _members(self) -> list[tuple[Channel, threading.Lock]]:
        with self._registry_lock:
            return [(channel, self._locks[channel_id]) for channel_id, channel in self._channels.items()]

    def _limit_reached(self, channel: Channel) -> list[PendingAlert]:
        # Caller holds the channel lock.
        today = self._clock().astimezone(ZoneInfo(channel.timezone)).date()
        if self._limit_alerted.get(channel.channel_id) == today:
            return []
        self._limit_alerted[channel.channel_id] = today
        return [
            (
                "limit_reached",
                AlertSeverity.MEDIUM,
                f"Channel {channel.display_name} reached its daily limit of {channel.daily_limit}",
                {"channel_id": channel.channel_id, "daily_limit": channel.daily_limit},
            )
        ]

    def _publish(self, alerts: list[PendingAlert]) -> None:
        if self.alert_bus is None:
            return
        for alert_type, severity, message, details in alerts:
            self.alert_bus.publish(alert_type, severity, message, details)
