"""Reminder trigger rules: when a reminder fires relative to the appointment."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from dental_comms.domain.models import Appointment, AppointmentStatus

POST_ATTENDANCE_RULE = "post_attendance"


@dataclass(frozen=True, slots=True)
class TriggerRule:
    name: str
    offset: timedelta
    template: str
    # How long after the fire time the message still fits the calendar.
    window: timedelta
    media_url: str | None = None
    asks_confirmation: bool = False

    @property
    def is_post_attendance(self) -> bool:
        return self.name == POST_ATTENDANCE_RULE

    def fire_time(self, scheduled_at: datetime) -> datetime:
        return scheduled_at + self.offset

    def render(self, appointment: Appointment) -> str:
        return self.template.format(
            patient_name=appointment.patient_name,
            date=appointment.scheduled_at.strftime("%d/%m/%Y"),
            time=appointment.scheduled_at.strftime("%H:%M"),
            clinic=appointment.clinic_name or "la clínica",
        )

    def expires_at(self, scheduled_at: datetime) -> datetime:
        return self.fire_time(scheduled_at) + self.window

    def is_expired(self, appointment: Appointment, now: datetime) -> bool:
        if now >= self.expires_at(appointment.scheduled_at):
            return True
        return not self.is_post_attendance and now >= appointment.scheduled_at

    def is_due(self, appointment: Appointment, now: datetime) -> bool:
        """Whether the threshold has been crossed and the window has not closed yet."""
        if not appointment.is_open:
            return False
        if self.fire_time(appointment.scheduled_at) > now or self.is_expired(appointment, now):
            return False
        if self.is_post_attendance:
            return appointment.status is AppointmentStatus.CONFIRMED
        return True


TWO_DAYS_BEFORE = TriggerRule(
    name="two_days_before",
    offset=-timedelta(days=2),
    window=timedelta(days=1),
    asks_confirmation=True,
    template=(
        "¡Hola {patient_name}! 😊 Te recordamos que tienes una cita en {clinic} "
        "el {date} a las {time}. ¿Puedes confirmar tu asistencia? Responde \"Sí\" para confirmar."
    ),
)

ONE_DAY_BEFORE = TriggerRule(
    name="one_day_before",
    offset=-timedelta(days=1),
    window=timedelta(hours=21),
    asks_confirmation=True,
    template=(
        "{patient_name}, mañana {date} a las {time} te esperamos en {clinic}. "
        "Por favor confirma tu asistencia respondiendo \"Sí\"."
    ),
)

SAME_DAY_3H_BEFORE = TriggerRule(
    name="same_day_3h_before",
    offset=-timedelta(hours=3),
    window=timedelta(hours=3),
    template="{patient_name}, hoy a las {time} es tu cita en {clinic}. ¡Te esperamos! 🦷",
)

POST_ATTENDANCE = TriggerRule(
    name=POST_ATTENDANCE_RULE,
    offset=timedelta(hours=2),
    window=timedelta(minutes=30),
    template=(
        "¡Gracias por tu visita de hoy, {patient_name}! 💙 "
        "Si tienes alguna molestia después de la consulta, escríbenos por aquí."
    ),
)

DEFAULT_TRIGGER_RULES: tuple[TriggerRule, ...] = (
    TWO_DAYS_BEFORE,
    ONE_DAY_BEFORE,
    SAME_DAY_3H_BEFORE,
    POST_ATTENDANCE,
)

RULES_BY_NAME: dict[str, TriggerRule] = {rule.name: rule for rule in DEFAULT_TRIGGER_RULES}
