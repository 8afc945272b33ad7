"""Composition root: one object owning the registry, queue, workflow and router."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable

from dental_comms.adapters.appointments import AppointmentRepository
from dental_comms.adapters.whatsapp_provider import (
    DryRunProvider,
    EvolutionApiClient,
    MessagingProvider,
    parse_status_callback,
)
from dental_comms.alerts.bus import AlertBus, Clock, utc_now
from dental_comms.channels.registry import ChannelRegistry
from dental_comms.domain.models import (
    Alert,
    Appointment,
    Channel,
    ChannelPurpose,
    DispatchReport,
    ReminderJob,
    RescheduleRequest,
)
from dental_comms.domain.triggers import TriggerRule
from dental_comms.utils.idempotency import IdempotencyStore
from dental_comms.utils.phone import PhoneRules
from dental_comms.webhooks.inbox import IncomingMessageLog
from dental_comms.webhooks.router import InboundWebhookRouter
from dental_comms.workflows.dispatch import DEFAULT_RETENTION, BackoffPolicy, ReminderDispatchQueue
from dental_comms.workflows.reschedule import RescheduleWorkflow, WhatsAppRescheduleNotifier

if TYPE_CHECKING:
    from dental_comms.jobs.tasks import CommsConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommsService:
    registry: ChannelRegistry
    queue: ReminderDispatchQueue
    workflow: RescheduleWorkflow
    router: InboundWebhookRouter
    alert_bus: AlertBus
    appointments: AppointmentRepository
    clock: Clock = utc_now

    def enqueue(self, appointment: Appointment, trigger_rule: TriggerRule | str) -> ReminderJob:
        return self.queue.enqueue(appointment, trigger_rule)

    def enqueue_due_reminders(self, now: datetime | None = None) -> list[ReminderJob]:
        """Pull appointments in the trigger window from the CRM and enqueue crossed rules."""
        now = now or self.clock()
        lookahead = max((-rule.offset for rule in self.queue.rules), default=timedelta(0))
        lookbehind = max((rule.offset + rule.window for rule in self.queue.rules), default=timedelta(0))
        appointments = self.appointments.get_appointments_due_for_reminder(now - lookbehind, now + lookahead)
        return self.queue.enqueue_due(appointments, now=now)

    def tick(self, now: datetime | None = None) -> DispatchReport:
        now = now or self.clock()
        try:
            self.enqueue_due_reminders(now)
        except Exception:  # a CRM outage must not stop already-queued reminders
            logger.exception("Could not load due appointments; dispatching the existing queue only")
        return self.queue.tick(now)

    def send_now(self, job_id: str) -> DispatchReport:
        return self.queue.send_now(job_id)

    def get_channel_health(self) -> list[dict[str, Any]]:
        return self.registry.get_channel_health()

    def get_pending_reschedules(self) -> list[RescheduleRequest]:
        return self.workflow.get_pending()

    def resolve_reschedule(self, request_id: str, notes: str | None = None) -> RescheduleRequest:
        return self.workflow.resolve(request_id, notes)

    def handle_inbound_webhook(self, payload: Any) -> dict[str, Any]:
        return self.router.handle(payload)

    def handle_provider_status(self, payload: dict[str, Any]) -> Channel | None:
        """Apply a gateway status callback; None when the payload carries no status change."""
        event = parse_status_callback(payload)
        if event is None:
            logger.info("Ignoring provider callback event=%r", payload.get("event"))
            return None
        return self.registry.apply_event(event)

    def reset_daily_counters(self, now: datetime | None = None) -> int:
        return self.registry.reset_daily_counters(now)

    def sweep_alerts(self, now: datetime | None = None) -> int:
        return self.alert_bus.sweep(now)

    def purge_terminal(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> int:
        return self.queue.purge_terminal(now, retention)

    def alerts(self, active_only: bool = True) -> list[Alert]:
        return self.alert_bus.active_alerts() if active_only else self.alert_bus.alerts()


def build_provider(config: CommsConfig) -> MessagingProvider:
    if config.dry_run:
        return DryRunProvider()
    if not config.evolution_api_url or not config.evolution_api_key:
        raise ValueError("EVOLUTION_API_URL and EVOLUTION_API_KEY are required when dry-run is disabled")
    return EvolutionApiClient(
        config.evolution_api_url,
        config.evolution_api_key,
        timeout=config.evolution_timeout_seconds,
    )


def build_service(
    config: CommsConfig,
    appointments: AppointmentRepository,
    *,
    provider: MessagingProvider | None = None,
    channels: Iterable[Channel] = (),
    clock: Clock = utc_now,
) -> CommsService:
    provider = provider or build_provider(config)
    phone_rules = PhoneRules(
        default_country_code=config.default_country_code,
        default_area_code=config.default_area_code,
        explicit_country=config.explicit_country,
    )
    alert_bus = AlertBus(clock=clock)
    registry = ChannelRegistry(alert_bus, clock=clock, failure_threshold=config.failure_threshold)
    for channel in channels:
        registry.register(channel)

    clinic = appointments.get_clinic_config()
    reminder_channels = registry.channels(ChannelPurpose.REMINDERS)
    if len(reminder_channels) < clinic.channel_count:
        logger.warning(
            "Clinic %s expects %s reminder channel(s) but only %s are registered",
            clinic.clinic_name,
            clinic.channel_count,
            len(reminder_channels),
        )

    queue = ReminderDispatchQueue(
        registry,
        provider,
        alert_bus,
        appointments=appointments,
        backoff=BackoffPolicy(
            base_delay=timedelta(seconds=config.backoff_base_seconds),
            multiplier=config.backoff_multiplier,
            max_delay=timedelta(seconds=config.backoff_max_seconds),
            max_attempts=config.max_attempts,
        ),
        phone_rules=phone_rules,
        clock=clock,
        idempotency_store=IdempotencyStore(config.idempotency_store_path),
        artifacts_dir=config.artifact_root,
    )
    notifier = WhatsAppRescheduleNotifier(
        registry,
        provider,
        secretary_phone=config.secretary_phone,
        phone_rules=phone_rules,
        clinic_name=clinic.clinic_name,
    )
    workflow = RescheduleWorkflow(alert_bus, notifier, clock=clock)
    router = InboundWebhookRouter(
        appointments,
        workflow,
        phone_rules=phone_rules,
        inbox=IncomingMessageLog(),
        dispatch_queue=queue,
        alert_bus=alert_bus,
        clock=clock,
    )
    return CommsService(
        registry=registry,
        queue=queue,
        workflow=workflow,
        router=router,
        alert_bus=alert_bus,
        appointments=appointments,
        clock=clock,
    )
