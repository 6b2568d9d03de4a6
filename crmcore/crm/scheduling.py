from __future__ import annotations

import calendar
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from crmcore.core.config import Settings, get_settings
from crmcore.crm.models import TERMINAL_APPOINTMENT_STATUSES
from crmcore.errors import ValidationFailed
from crmcore.metrics import observe_timing_rejection


def business_zone(settings: Settings | None = None) -> ZoneInfo:
    resolved = settings or get_settings()
    return ZoneInfo(resolved.business_timezone)


def to_utc(value: datetime, settings: Settings | None = None) -> datetime:
    """Normalize to an aware UTC datetime; naive values are read as business-local time."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=business_zone(settings))
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _reject(rule: str, message: str) -> ValidationFailed:
    observe_timing_rejection(rule)
    return ValidationFailed("scheduled_at", message)


def _hour_label(hour: int) -> str:
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display} {suffix}"


def validate_timing(
    scheduled_at: datetime,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> datetime:
    """Apply the business timing rules and return ``scheduled_at`` in UTC.

    Rules are checked in order: not in the past, not beyond the booking
    horizon, inside business hours and not on a weekend. Hours and weekdays
    are evaluated in the configured business time zone.
    """

    resolved_settings = settings or get_settings()
    zone = business_zone(resolved_settings)
    candidate = to_utc(scheduled_at, resolved_settings)
    current = to_utc(now, resolved_settings) if now is not None else datetime.now(timezone.utc)

    if candidate <= current:
        raise _reject("past", "Appointment cannot be scheduled in the past.")

    horizon = resolved_settings.max_schedule_ahead_months
    if candidate > add_months(current, horizon):
        raise _reject("horizon", f"Appointment cannot be scheduled more than {horizon} months in advance.")

    local = candidate.astimezone(zone)
    start, end = resolved_settings.business_hours_start, resolved_settings.business_hours_end
    if local.hour < start or local.hour > end:
        raise _reject(
            "business_hours",
            f"Appointments can only be scheduled between {_hour_label(start)} and {_hour_label(end)}.",
        )

    if local.weekday() >= 5:
        raise _reject("weekend", "Appointments cannot be scheduled on weekends.")

    return candidate


def validate_duration(duration: int, settings: Settings | None = None) -> int:
    resolved_settings = settings or get_settings()
    low, high = resolved_settings.min_appointment_duration, resolved_settings.max_appointment_duration
    if duration < low or duration > high:
        raise ValidationFailed("duration", f"Duration must be between {low} and {high} minutes.")
    return duration


def appointment_end(scheduled_at: datetime, duration: int) -> datetime:
    return scheduled_at + timedelta(minutes=duration)


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    # Half-open: [start, end). Touching endpoints do not overlap.
    return start_a < end_b and start_b < end_a


def is_participant(appointment: Any, user_id: uuid.UUID) -> bool:
    return user_id in (appointment.scheduled_by_id, appointment.scheduled_with_id)


def find_conflicts(
    candidates: Iterable[Any],
    user_id: uuid.UUID,
    scheduled_at: datetime,
    duration: int,
    exclude_appointment_id: uuid.UUID | None = None,
) -> list[Any]:
    """Appointments in ``candidates`` that ``user_id`` attends and that overlap the proposed slot."""

    start = to_utc(scheduled_at)
    end = appointment_end(start, duration)
    conflicts = []
    for appointment in candidates:
        if exclude_appointment_id is not None and appointment.id == exclude_appointment_id:
            continue
        if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
            continue
        if not is_participant(appointment, user_id):
            continue
        other_start = to_utc(appointment.scheduled_at)
        if intervals_overlap(start, end, other_start, appointment_end(other_start, appointment.duration)):
            conflicts.append(appointment)
    return conflicts
