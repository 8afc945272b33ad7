"""Gate for the automated message sent after a patient's visit.

The follow-up may only go out when the appointment was confirmed, happened
today in the clinic's timezone, and we are within half an hour of the two
hour mark after the appointment. Each check is evaluated independently so
staff can see every reason a send was blocked.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from dental_comms.domain.errors import EligibilityDenied
from dental_comms.domain.models import Appointment, AppointmentStatus, CheckOutcome, EligibilityResult

CONFIRMATION_CHECK = "confirmationCheck"
DAY_CHECK = "dayCheck"
TIME_CHECK = "timeCheck"

FOLLOW_UP_DELAY = timedelta(hours=2)
FOLLOW_UP_MARGIN = timedelta(minutes=30)


def _require_aware(value: datetime, label: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{label} must be timezone-aware")


def check_confirmation(appointment: Appointment) -> CheckOutcome:
    if appointment.status is AppointmentStatus.CONFIRMED:
        return CheckOutcome(CONFIRMATION_CHECK, True, "Appointment is confirmed")
    return CheckOutcome(
        CONFIRMATION_CHECK,
        False,
        f"Appointment status is {appointment.status.value}, expected confirmed",
    )


def check_appointment_day(appointment: Appointment, now: datetime, timezone: str | None = None) -> CheckOutcome:
    zone = ZoneInfo(timezone) if timezone else appointment.scheduled_at.tzinfo
    appointment_day = appointment.scheduled_at.astimezone(zone).date()
    today = now.astimezone(zone).date()
    if appointment_day == today:
        return CheckOutcome(DAY_CHECK, True, "Appointment is today")
    return CheckOutcome(
        DAY_CHECK,
        False,
        f"Appointment day {appointment_day.isoformat()} is not today ({today.isoformat()})",
    )


def check_post_attendance_window(appointment: Appointment, now: datetime) -> CheckOutcome:
    target = appointment.scheduled_at + FOLLOW_UP_DELAY
    drift = abs(now - target)
    if drift <= FOLLOW_UP_MARGIN:
        return CheckOutcome(TIME_CHECK, True, "Within the follow-up window")
    minutes = int(drift.total_seconds() // 60)
    return CheckOutcome(
        TIME_CHECK,
        False,
        f"Now is {minutes} minutes away from the follow-up time {target.isoformat()}",
    )


def is_eligible(appointment: Appointment, now: datetime, timezone: str | None = None) -> EligibilityResult:
    """Run all three checks; eligible only when every one passes."""
    _require_aware(now, "now")
    _require_aware(appointment.scheduled_at, "appointment.scheduled_at")

    checks = [
        check_confirmation(appointment),
        check_appointment_day(appointment, now, timezone),
        check_post_attendance_window(appointment, now),
    ]
    reasons = [check.code for check in checks if not check.passed]
    return EligibilityResult(eligible=not reasons, reasons=reasons, checks=checks)


def require_eligible(appointment: Appointment, now: datetime, timezone: str | None = None) -> EligibilityResult:
    result = is_eligible(appointment, now, timezone)
    if not result.eligible:
        raise EligibilityDenied(result.reasons)
    return result
