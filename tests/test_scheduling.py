from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from crmcore.core.config import Settings
from crmcore.crm.models import Appointment, AppointmentStatus
from crmcore.crm.scheduling import add_months, find_conflicts, intervals_overlap, validate_timing
from crmcore.errors import ValidationFailed


# Monday 2025-03-03 09:00 UTC
NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
UTC_SETTINGS = Settings(business_timezone="UTC")


def _at(day: int, hour: int, minute: int = 0, month: int = 3) -> datetime:
    return datetime(2025, month, day, hour, minute, tzinfo=timezone.utc)


def _appointment(user_id: uuid.UUID, start: datetime, duration: int = 60, status: str = AppointmentStatus.SCHEDULED) -> Appointment:
    return Appointment(
        id=uuid.uuid4(),
        lead_id=uuid.uuid4(),
        scheduled_by_id=user_id,
        scheduled_with_id=None,
        scheduled_at=start,
        duration=duration,
        status=status,
    )


def test_weekday_afternoon_within_horizon_is_accepted() -> None:
    assert validate_timing(_at(4, 14), now=NOW, settings=UTC_SETTINGS) == _at(4, 14)


def test_last_business_hour_is_accepted() -> None:
    assert validate_timing(_at(4, 18, 30), now=NOW, settings=UTC_SETTINGS) == _at(4, 18, 30)


@pytest.mark.parametrize(
    ("scheduled_at", "message"),
    [
        (_at(8, 10), "Appointments cannot be scheduled on weekends."),
        (_at(4, 19), "Appointments can only be scheduled between 8 AM and 6 PM."),
        (_at(4, 7, 59), "Appointments can only be scheduled between 8 AM and 6 PM."),
        (_at(3, 8, 59), "Appointment cannot be scheduled in the past."),
        (NOW, "Appointment cannot be scheduled in the past."),
        (_at(4, 10, month=9), "Appointment cannot be scheduled more than 6 months in advance."),
    ],
)
def test_timing_rules_reject(scheduled_at: datetime, message: str) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        validate_timing(scheduled_at, now=NOW, settings=UTC_SETTINGS)
    assert exc_info.value.errors == {"scheduled_at": [message]}


def test_business_hours_are_evaluated_in_business_timezone() -> None:
    new_york = Settings(business_timezone="America/New_York")

    # 14:00 UTC is 09:00 in New York in early March.
    assert validate_timing(_at(4, 14), now=NOW, settings=new_york) == _at(4, 14)
    with pytest.raises(ValidationFailed):
        validate_timing(_at(4, 12), now=NOW, settings=new_york)

    naive_local = datetime(2025, 3, 4, 14, 0)
    assert validate_timing(naive_local, now=NOW, settings=new_york) == _at(4, 19)


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(datetime(2025, 1, 31, 12, 0), 1) == datetime(2025, 2, 28, 12, 0)
    assert add_months(datetime(2025, 11, 15), 6) == datetime(2026, 5, 15)


def test_intervals_are_half_open() -> None:
    assert intervals_overlap(_at(4, 10), _at(4, 11), _at(4, 10, 30), _at(4, 11))
    assert not intervals_overlap(_at(4, 10), _at(4, 11), _at(4, 11), _at(4, 11, 30))


def test_find_conflicts_overlap_and_back_to_back() -> None:
    user_id = uuid.uuid4()
    existing = _appointment(user_id, _at(4, 10), 60)

    assert find_conflicts([existing], user_id, _at(4, 10, 30), 30) == [existing]
    assert find_conflicts([existing], user_id, _at(4, 11), 30) == []
    assert find_conflicts([existing], user_id, _at(4, 9, 30), 30) == []
    assert find_conflicts([existing], user_id, _at(4, 9, 30), 31) == [existing]


def test_find_conflicts_ignores_terminal_excluded_and_foreign_appointments() -> None:
    user_id = uuid.uuid4()
    cancelled = _appointment(user_id, _at(4, 10), status=AppointmentStatus.CANCELLED)
    completed = _appointment(user_id, _at(4, 10), status=AppointmentStatus.COMPLETED)
    no_show = _appointment(user_id, _at(4, 10), status=AppointmentStatus.NO_SHOW)
    foreign = _appointment(uuid.uuid4(), _at(4, 10))

    assert find_conflicts([cancelled, completed, foreign], user_id, _at(4, 10), 60) == []
    assert find_conflicts([no_show], user_id, _at(4, 10), 60) == [no_show]
    assert find_conflicts([no_show], user_id, _at(4, 10), 60, exclude_appointment_id=no_show.id) == []


def test_find_conflicts_matches_participant_side() -> None:
    user_id = uuid.uuid4()
    appointment = _appointment(uuid.uuid4(), _at(4, 10))
    appointment.scheduled_with_id = user_id

    assert find_conflicts([appointment], user_id, _at(4, 10, 15), 15) == [appointment]
