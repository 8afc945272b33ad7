from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dental_comms.adapters.appointments import InMemoryAppointmentRepository
from dental_comms.alerts.bus import AlertBus
from dental_comms.channels.registry import ChannelRegistry
from dental_comms.domain.errors import ProviderSendFailure
from dental_comms.domain.models import (
    Appointment,
    AppointmentStatus,
    Channel,
    ChannelPurpose,
    ClinicConfig,
    SendOutcome,
)
from dental_comms.workflows.dispatch import BackoffPolicy, ReminderDispatchQueue

CLINIC_TZ = timezone(timedelta(hours=-3))
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=CLINIC_TZ)


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider:
    """Records sends; ``failures`` makes the first N sends fail, ``always_fail`` every send."""

    def __init__(self, failures: int = 0, always_fail: bool = False, raise_errors: bool = False) -> None:
        self.failures = failures
        self.always_fail = always_fail
        self.raise_errors = raise_errors
        self.sent: list[dict[str, str | None]] = []
        self.attempts = 0

    def send_message(self, channel: Channel, phone: str, content: str, media: str | None = None) -> SendOutcome:
        self.attempts += 1
        if self.always_fail or self.attempts <= self.failures:
            if self.raise_errors:
                raise ProviderSendFailure("gateway timeout")
            return SendOutcome(success=False, error="HTTP 500: gateway down")
        self.sent.append({"channel_id": channel.channel_id, "phone": phone, "content": content, "media": media})
        return SendOutcome(success=True, provider_message_id=f"msg-{len(self.sent)}")


def make_channel(
    channel_id: str,
    *,
    country: str = "PY",
    purpose: ChannelPurpose = ChannelPurpose.REMINDERS,
    daily_limit: int = 1000,
    daily_message_count: int = 0,
    **kwargs,
) -> Channel:
    return Channel(
        channel_id=channel_id,
        country=country,
        display_name=f"Canal {channel_id}",
        purpose=purpose,
        daily_limit=daily_limit,
        daily_message_count=daily_message_count,
        **kwargs,
    )


def make_appointment(
    appointment_id: str = "appt-1",
    *,
    patient_name: str = "Alice Gómez",
    patient_phone: str = "11987654321",
    scheduled_at: datetime | None = None,
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    country: str | None = None,
) -> Appointment:
    return Appointment(
        appointment_id=appointment_id,
        patient_name=patient_name,
        patient_phone=patient_phone,
        scheduled_at=scheduled_at or NOW + timedelta(days=1),
        status=status,
        clinic_name="Odonto Central",
        country=country,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def alert_bus(clock: FixedClock) -> AlertBus:
    return AlertBus(clock=clock)


@pytest.fixture
def registry(alert_bus: AlertBus, clock: FixedClock) -> ChannelRegistry:
    registry = ChannelRegistry(alert_bus, clock=clock)
    registry.register(make_channel("rem-1"))
    registry.register(make_channel("int-1", purpose=ChannelPurpose.INTEGRATION))
    return registry


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def repo() -> InMemoryAppointmentRepository:
    return InMemoryAppointmentRepository(clinic_config=ClinicConfig(clinic_name="Odonto Central"))


@pytest.fixture
def queue(
    registry: ChannelRegistry,
    provider: FakeProvider,
    alert_bus: AlertBus,
    repo: InMemoryAppointmentRepository,
    clock: FixedClock,
) -> ReminderDispatchQueue:
    return ReminderDispatchQueue(
        registry,
        provider,
        alert_bus,
        appointments=repo,
        backoff=BackoffPolicy(base_delay=timedelta(minutes=5), max_attempts=3),
        clock=clock,
    )
