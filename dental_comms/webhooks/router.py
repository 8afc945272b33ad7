"""Inbound WhatsApp message handling.

Every call returns the same five-key response and never raises. A message
whose sender phone cannot be normalized is rejected before anything is
recorded; every other message is recorded once, then its intent is applied to
the sender's most relevant open appointment.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dental_comms.adapters.appointments import AppointmentRepository
from dental_comms.alerts.bus import AlertBus, Clock, utc_now
from dental_comms.classification.intent import IntentClassifier, KeywordIntentClassifier
from dental_comms.domain.models import AlertSeverity, Appointment, AppointmentStatus, IncomingMessage, Intent
from dental_comms.utils.logging import get_structured_logger, log_workflow_event, mask_phone
from dental_comms.utils.phone import PhoneRules
from dental_comms.webhooks.inbox import IncomingMessageLog
from dental_comms.workflows.dispatch import ReminderDispatchQueue
from dental_comms.workflows.reschedule import RescheduleWorkflow

logger = logging.getLogger(__name__)

WORKFLOW_STEP = "inbound_webhook"

INTENT_STATUSES = {
    Intent.CONFIRMED: AppointmentStatus.CONFIRMED,
    Intent.CANCELLED: AppointmentStatus.CANCELLED,
    Intent.RESCHEDULE: AppointmentStatus.RESCHEDULING_PENDING,
}


class InboundWebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender_phone: str = Field(alias="senderPhone", min_length=1)
    sender_name: str | None = Field(default=None, alias="senderName")
    message: str
    timestamp: float | None = None


def parse_received_at(timestamp: float | None, fallback: datetime) -> datetime:
    """Epoch seconds or milliseconds (values above 1e12) to an aware UTC datetime."""
    if timestamp is None:
        return fallback
    seconds = timestamp / 1000 if timestamp > 1e12 else timestamp
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class InboundWebhookRouter:
    def __init__(
        self,
        appointments: AppointmentRepository,
        workflow: RescheduleWorkflow,
        *,
        classifier: IntentClassifier | None = None,
        phone_rules: PhoneRules | None = None,
        inbox: IncomingMessageLog | None = None,
        dispatch_queue: ReminderDispatchQueue | None = None,
        alert_bus: AlertBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.appointments = appointments
        self.workflow = workflow
        self.classifier = classifier or KeywordIntentClassifier()
        self.phone_rules = phone_rules or PhoneRules()
        self.inbox = inbox or IncomingMessageLog()
        self.dispatch_queue = dispatch_queue
        self.alert_bus = alert_bus
        self._clock = clock
        self._events = get_structured_logger()

    def handle(self, payload: InboundWebhookPayload | dict[str, Any]) -> dict[str, Any]:
        started = time.perf_counter()
        response: dict[str, Any] = {
            "success": False,
            "detectedIntent": Intent.UNKNOWN.value,
            "appointmentUpdated": False,
            "notificationSent": False,
        }

        try:
            self._handle(payload, response)
        except ValidationError as exc:
            logger.warning("Rejected inbound webhook payload: %s", exc.errors())
        except Exception as exc:  # broad so the provider always gets a response
            logger.exception("Inbound webhook handling failed")
            response["success"] = False
            if self.alert_bus is not None:
                self.alert_bus.publish(
                    "webhook_failed",
                    AlertSeverity.MEDIUM,
                    f"Inbound webhook handling failed: {exc}",
                    {"error_type": type(exc).__name__},
                )

        response["processingTimeMs"] = int((time.perf_counter() - started) * 1000)
        return response

    def _handle(self, payload: InboundWebhookPayload | dict[str, Any], response: dict[str, Any]) -> None:
        parsed = payload if isinstance(payload, InboundWebhookPayload) else InboundWebhookPayload.model_validate(payload)

        phone = self.phone_rules.normalize(parsed.sender_phone)
        if phone is None:
            logger.warning("Rejected inbound message from unparseable phone %s", mask_phone(parsed.sender_phone))
            return

        result = self.classifier.classify(parsed.message)
        response["detectedIntent"] = result.intent.value

        appointment = self.appointments.get_appointment_by_phone(phone)
        message = self.inbox.record(
            IncomingMessage(
                message_id=uuid.uuid4().hex,
                sender_phone=phone,
                sender_name=parsed.sender_name,
                text=parsed.message,
                intent=result.intent,
                confidence=result.confidence,
                received_at=parse_received_at(parsed.timestamp, self._clock()),
                appointment_id=appointment.appointment_id if appointment else None,
            )
        )

        patient_name = appointment.patient_name if appointment else (parsed.sender_name or "")
        if appointment is None:
            log_workflow_event(
                self._events,
                workflow_step=WORKFLOW_STEP,
                patient_name=patient_name,
                job_key=message.message_id,
                status="unmatched",
                message=f"No open appointment for sender; intent {result.intent.value}",
            )
        elif result.intent is Intent.UNKNOWN:
            log_workflow_event(
                self._events,
                workflow_step=WORKFLOW_STEP,
                patient_name=patient_name,
                job_key=message.message_id,
                status="unknown_intent",
                message="Message did not match any intent; left for staff",
            )
        else:
            self._apply_intent(appointment, result.intent, parsed.message, response)
            log_workflow_event(
                self._events,
                workflow_step=WORKFLOW_STEP,
                patient_name=patient_name,
                job_key=message.message_id,
                status=result.intent.value,
                message=f"Appointment {appointment.appointment_id} -> {INTENT_STATUSES[result.intent].value}",
            )

        self.inbox.mark_processed(message.message_id)
        response["success"] = True

    def _apply_intent(self, appointment: Appointment, intent: Intent, text: str, response: dict[str, Any]) -> None:
        updated = self.appointments.update_appointment_status(appointment.appointment_id, INTENT_STATUSES[intent])
        response["appointmentUpdated"] = updated is not None

        if intent is Intent.CANCELLED and self.dispatch_queue is not None:
            self.dispatch_queue.cancel_for_appointment(appointment.appointment_id)
        elif intent is Intent.RESCHEDULE:
            request = self.workflow.open_request(updated or appointment, text)
            response["notificationSent"] = self.workflow.notify(request.request_id)
