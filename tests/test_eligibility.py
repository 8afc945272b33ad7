from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from conftest import NOW, make_appointment
from dental_comms.domain.errors import EligibilityDenied
from dental_comms.domain.models import AppointmentStatus
from dental_comms.eligibility.post_attendance import (
    CONFIRMATION_CHECK,
    DAY_CHECK,
    TIME_CHECK,
    is_eligible,
    require_eligible,
)


def _confirmed(scheduled_at: datetime):
    return make_appointment(scheduled_at=scheduled_at, status=AppointmentStatus.CONFIRMED)


def test_eligible_two_hours_after_confirmed_appointment_today() -> None:
    result = is_eligible(_confirmed(NOW - timedelta(hours=2)), NOW)

    assert result.eligible is True
    assert result.reasons == []
    assert [check.code for check in result.checks] == [CONFIRMATION_CHECK, DAY_CHECK, TIME_CHECK]
    assert all(check.passed for check in result.checks)


@pytest.mark.parametrize("drift_minutes", [-30, -10, 0, 15, 30])
def test_time_window_is_thirty_minutes_each_side(drift_minutes: int) -> None:
    now = NOW + timedelta(minutes=drift_minutes)

    assert is_eligible(_confirmed(NOW - timedelta(hours=2)), now).eligible is True


@pytest.mark.parametrize("drift_minutes", [-31, 31, 120])
def test_outside_window_fails_time_check(drift_minutes: int) -> None:
    result = is_eligible(_confirmed(NOW - timedelta(hours=2)), NOW + timedelta(minutes=drift_minutes))

    assert result.eligible is False
    assert result.reasons == [TIME_CHECK]


def test_unconfirmed_appointment_fails_confirmation_check() -> None:
    appointment = make_appointment(scheduled_at=NOW - timedelta(hours=2), status=AppointmentStatus.SCHEDULED)

    result = is_eligible(appointment, NOW)

    assert result.eligible is False
    assert result.reasons == [CONFIRMATION_CHECK]


def test_appointment_on_another_day_fails_day_check_even_if_time_matches() -> None:
    # 23:00 yesterday + 2h = 01:00 today, so the time window passes.
    scheduled_at = datetime(2026, 3, 9, 23, 0, tzinfo=NOW.tzinfo)
    now = datetime(2026, 3, 10, 1, 0, tzinfo=NOW.tzinfo)

    result = is_eligible(_confirmed(scheduled_at), now)

    assert result.eligible is False
    assert result.reasons == [DAY_CHECK]


def test_every_failed_check_is_reported() -> None:
    appointment = make_appointment(scheduled_at=NOW - timedelta(days=3), status=AppointmentStatus.CANCELLED)

    result = is_eligible(appointment, NOW)

    assert result.reasons == [CONFIRMATION_CHECK, DAY_CHECK, TIME_CHECK]
    assert result.as_dict()["checks"][DAY_CHECK]["passed"] is False


def test_day_check_uses_given_timezone() -> None:
    # 22:00 at UTC-3 is already the next day in UTC.
    scheduled_at = datetime(2026, 3, 10, 22, 0, tzinfo=NOW.tzinfo)
    now = scheduled_at + timedelta(hours=2)

    assert is_eligible(_confirmed(scheduled_at), now).reasons == [DAY_CHECK]
    assert is_eligible(_confirmed(scheduled_at), now, timezone="UTC").reasons == []


def test_naive_datetimes_are_rejected() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        is_eligible(_confirmed(NOW), datetime(2026, 3, 10, 12, 0))


def test_require_eligible_raises_with_reasons() -> None:
    with pytest.raises(EligibilityDenied) as excinfo:
        require_eligible(_confirmed(NOW - timedelta(hours=5)), NOW)

    assert excinfo.value.reasons == [TIME_CHECK]
