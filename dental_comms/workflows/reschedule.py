"""Patient-initiated reschedule requests: pending -> notified -> resolved."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Protocol

from dental_comms.adapters.whatsapp_provider import MessagingProvider
from dental_comms.alerts.bus import AlertBus, Clock, utc_now
from dental_comms.channels.registry import ChannelRegistry
from dental_comms.domain.errors import InvalidTransition, UnknownRescheduleRequest
from dental_comms.domain.models import (
    AlertSeverity,
    Appointment,
    ChannelPurpose,
    RescheduleRequest,
    RescheduleStatus,
    SendRequest,
)
from dental_comms.orchestration.send import orchestrate_send
from dental_comms.utils.logging import mask_patient_name
from dental_comms.utils.phone import PhoneRules

logger = logging.getLogger(__name__)

STATUS_ORDER = {
    RescheduleStatus.PENDING: 0,
    RescheduleStatus.NOTIFIED: 1,
    RescheduleStatus.RESOLVED: 2,
}

PATIENT_REPLY = "A secretaria te escribe ahora para reagendarte. Gracias {name}! 😊"

SECRETARY_MESSAGE = """🔔 *SOLICITUD DE REAGENDAMIENTO*

*Paciente:* {name}
*Teléfono:* +{phone}
*Link WhatsApp:* https://wa.me/{phone}

*Cita actual:*
📅 {date}
🕐 {time}

*Clínica:* {clinic}

*Mensaje del paciente:*
"{message}"

⚠️ *ACCIÓN REQUERIDA:* La secretaria debe contactar al paciente para reagendar."""


def _snapshot(request: RescheduleRequest) -> RescheduleRequest:
    return replace(request, follow_up_messages=list(request.follow_up_messages))


class RescheduleNotifier(Protocol):
    def notify(self, request: RescheduleRequest) -> None: ...


class RescheduleWorkflow:
    def __init__(
        self,
        alert_bus: AlertBus | None = None,
        notifier: RescheduleNotifier | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.alert_bus = alert_bus
        self.notifier = notifier
        self._clock = clock
        self._requests: dict[str, RescheduleRequest] = {}
        self._lock = threading.Lock()

    def open_request(self, appointment: Appointment, message_text: str) -> RescheduleRequest:
        """Create a pending request, or append the message to the appointment's open one."""
        with self._lock:
            for request in self._requests.values():
                if request.appointment_id == appointment.appointment_id and request.is_open:
                    request.follow_up_messages.append(message_text)
                    logger.info(
                        "Appended follow-up to reschedule request %s (%s)",
                        request.request_id,
                        mask_patient_name(request.patient_name),
                    )
                    return _snapshot(request)

            request = RescheduleRequest(
                request_id=uuid.uuid4().hex,
                appointment_id=appointment.appointment_id,
                patient_name=appointment.patient_name,
                patient_phone=appointment.patient_phone,
                message_text=message_text,
                original_scheduled_at=appointment.scheduled_at,
                created_at=self._clock(),
            )
            self._requests[request.request_id] = request
        logger.info("Opened reschedule request %s for appointment %s", request.request_id, appointment.appointment_id)
        return _snapshot(request)

    def notify(self, request_id: str) -> bool:
        """Alert staff about the request; True when an alert went out."""
        with self._lock:
            request = self._get_locked(request_id)
            if request.status is RescheduleStatus.RESOLVED:
                return False
            if request.status is RescheduleStatus.PENDING:
                request.status = RescheduleStatus.NOTIFIED
                request.notified_at = self._clock()
            snapshot = _snapshot(request)

        if self.alert_bus is not None:
            self.alert_bus.publish(
                "reschedule_alert",
                AlertSeverity.HIGH,
                f"{snapshot.patient_name} asked to reschedule their appointment",
                {
                    "request_id": snapshot.request_id,
                    "appointment_id": snapshot.appointment_id,
                    "patient_name": snapshot.patient_name,
                    "patient_phone": snapshot.patient_phone,
                    "message": snapshot.follow_up_messages[-1] if snapshot.follow_up_messages else snapshot.message_text,
                },
            )

        if self.notifier is not None:
            try:
                self.notifier.notify(snapshot)
            except Exception:
                logger.exception("Reschedule notifier failed for request %s", request_id)
        return True

    def resolve(self, request_id: str, notes: str | None = None) -> RescheduleRequest:
        with self._lock:
            request = self._get_locked(request_id)
            if request.status is RescheduleStatus.RESOLVED:
                return _snapshot(request)
            request.status = RescheduleStatus.RESOLVED
            request.resolved_at = self._clock()
            if notes:
                request.notes = notes
            snapshot = _snapshot(request)
        logger.info("Resolved reschedule request %s", request_id)
        return snapshot

    def transition(self, request_id: str, target: RescheduleStatus, notes: str | None = None) -> RescheduleRequest:
        """Move a request forward; backward moves raise ``InvalidTransition``."""
        if target is RescheduleStatus.RESOLVED:
            return self.resolve(request_id, notes)
        with self._lock:
            request = self._get_locked(request_id)
            if STATUS_ORDER[target] < STATUS_ORDER[request.status]:
                raise InvalidTransition(request.status.value, target.value)
            if request.status is not target:
                request.status = target
                request.notified_at = self._clock()
            return _snapshot(request)

    def get(self, request_id: str) -> RescheduleRequest:
        with self._lock:
            return _snapshot(self._get_locked(request_id))

    def get_pending(self) -> list[RescheduleRequest]:
        with self._lock:
            pending = [_snapshot(request) for request in self._requests.values() if request.is_open]
        return sorted(pending, key=lambda request: (request.created_at is None, request.created_at))

    def requests(self) -> list[RescheduleRequest]:
        with self._lock:
            return [_snapshot(request) for request in self._requests.values()]

    def _get_locked(self, request_id: str) -> RescheduleRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise UnknownRescheduleRequest(f"Unknown reschedule request {request_id!r}")
        return request


class WhatsAppRescheduleNotifier:
    """Replies to the patient and pings the secretary over an integration channel."""

    def __init__(
        self,
        registry: ChannelRegistry,
        provider: MessagingProvider,
        secretary_phone: str | None = None,
        phone_rules: PhoneRules | None = None,
        clinic_name: str = "",
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.secretary_phone = secretary_phone
        self.phone_rules = phone_rules or PhoneRules()
        self.clinic_name = clinic_name

    def notify(self, request: RescheduleRequest) -> None:
        patient = orchestrate_send(
            SendRequest(
                recipient_phone=request.patient_phone,
                content=PATIENT_REPLY.format(name=request.patient_name),
                purpose=ChannelPurpose.INTEGRATION,
                patient_name=request.patient_name,
            ),
            registry=self.registry,
            provider=self.provider,
            phone_rules=self.phone_rules,
        )
        if not patient.sent:
            logger.warning("Patient reply for reschedule %s not sent: %s", request.request_id, patient.issue_codes)

        if not self.secretary_phone:
            logger.info("No secretary phone configured; skipping corporate notification")
            return

        scheduled = request.original_scheduled_at
        content = SECRETARY_MESSAGE.format(
            name=request.patient_name,
            phone=patient.normalized_phone or request.patient_phone,
            date=scheduled.strftime("%Y-%m-%d") if scheduled else "-",
            time=scheduled.strftime("%H:%M") if scheduled else "-",
            clinic=self.clinic_name or "-",
            message=request.follow_up_messages[-1] if request.follow_up_messages else request.message_text,
        )
        secretary = orchestrate_send(
            SendRequest(
                recipient_phone=self.secretary_phone,
                content=content,
                purpose=ChannelPurpose.INTEGRATION,
            ),
            registry=self.registry,
            provider=self.provider,
            phone_rules=self.phone_rules,
        )
        if not secretary.sent:
            logger.warning("Secretary notification for reschedule %s not sent: %s", request.request_id, secretary.issue_codes)
