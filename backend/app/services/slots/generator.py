# backend/app/services/slots/generator.py
"""
Level 2: Slot generation.

Calculates bookable start times for a service on a specific day.

Takes into account:
- Open intervals (Level 1, cached in Redis)
- Service duration and buffer (break_min)
- Existing PENDING/CONFIRMED appointments in the scope
- Current time in the business timezone (no past starts)
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from redis import Redis
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...errors import NotFound
from ...models import Appointments, Services
from .calendar_resolver import business_zone, load_business, resolve_open_intervals
from .config import MINUTES_PER_DAY, BookingConfig, get_booking_config, minutes_to_time_str
from .intervals import Interval, overlaps
from .scope import BusinessWide, Scope, StaffScoped

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("PENDING", "CONFIRMED")


def generate_slots(
    open_intervals: Iterable[Interval],
    duration_min: int,
    buffer_min: int,
    step_min: int,
    booked: Iterable[tuple[int, int]] = (),
    not_before: Optional[int] = None,
) -> list[int]:
    """
    Pure slot generation (no I/O). Returns start minutes in ascending order.

    A start s is valid when:
    - [s, s + duration) fits inside one open interval
    - [s, s + duration + buffer) overlaps no booked block
    - s >= not_before (when given)

    booked: (start, end) minute blocks already including their own buffer
    Candidates are laid on the step grid anchored at each interval start.
    """
    if duration_min <= 0:
        raise ValueError("Service duration must be positive")
    if step_min <= 0:
        raise ValueError("Slot step must be positive")

    blocks = sorted(booked)
    starts: list[int] = []

    for interval in open_intervals:
        candidate = interval.start
        while candidate + duration_min <= interval.end:
            if not_before is None or candidate >= not_before:
                blocked_end = candidate + duration_min + buffer_min
                if not any(overlaps(candidate, blocked_end, b_start, b_end) for b_start, b_end in blocks):
                    starts.append(candidate)
            candidate += step_min

    return starts


def get_available_slots(
    db: Session,
    business_id: int,
    service_id: int,
    target_date: date,
    scope: Scope = BusinessWide(),
    now: Optional[datetime] = None,
    redis: Optional[Redis] = None,
    config: BookingConfig | None = None,
    exclude_appointment_id: Optional[int] = None,
) -> list[str]:
    """
    Available "HH:MM" start times, ascending and unique.

    Raises:
        NotFound: unknown business, service or staff
        InvalidBusinessState: business timezone/hours unusable
    """
    config = config or get_booking_config()
    business = load_business(db, business_id)
    service = get_service(db, business_id, service_id)

    not_before = earliest_start(service, target_date, business_now(business, now))
    if not_before is not None and not_before >= MINUTES_PER_DAY:
        return []

    intervals = resolve_open_intervals(
        db, business_id, target_date, scope=scope, service_id=service_id, redis=redis, config=config
    )
    if not intervals:
        return []

    booked = booked_blocks(
        load_conflicting_appointments(db, business_id, target_date, scope, exclude_appointment_id)
    )

    starts = generate_slots(
        intervals,
        duration_min=service.duration_min,
        buffer_min=service.break_min or 0,
        step_min=config.slot_step_minutes,
        booked=booked,
        not_before=not_before,
    )
    return [minutes_to_time_str(s) for s in starts]


# ── Helpers ──────────────────────────────────────────────────────────────


def business_now(business, now: Optional[datetime] = None) -> datetime:
    """Current wall time in the business timezone (naive)."""
    zone = business_zone(business)
    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is None:
        # Naive input is taken as already business-local
        return now
    return now.astimezone(zone).replace(tzinfo=None)


def booked_blocks(appointments: Iterable) -> list[tuple[int, int]]:
    """Minute blocks [start, end + buffer) of appointments on one day."""
    blocks = []
    for appt in appointments:
        start = appt.start_time.hour * 60 + appt.start_time.minute
        end = start + int((appt.end_time - appt.start_time).total_seconds() // 60)
        buffer_min = appt.service.break_min if appt.service is not None else 0
        blocks.append((start, end + (buffer_min or 0)))
    return blocks


def load_conflicting_appointments(
    db: Session,
    business_id: int,
    target_date: date,
    scope: Scope,
    exclude_appointment_id: Optional[int] = None,
) -> list:
    """
    Active appointments that compete with a booking in scope on target_date.

    BusinessWide: every appointment of the business.
    StaffScoped: the staff member's appointments plus unassigned ones.
    """
    query = db.query(Appointments).filter(
        Appointments.business_id == business_id,
        Appointments.date == target_date,
        Appointments.status.in_(ACTIVE_STATUSES),
    )
    if isinstance(scope, StaffScoped):
        query = query.filter(
            or_(Appointments.staff_id == scope.staff_id, Appointments.staff_id.is_(None))
        )
    if exclude_appointment_id is not None:
        query = query.filter(Appointments.id != exclude_appointment_id)
    return query.order_by(Appointments.start_time).all()


def get_service(db: Session, business_id: int, service_id: int) -> Services:
    """Active service of the business."""
    service = db.query(Services).filter(
        Services.id == service_id,
        Services.business_id == business_id,
        Services.is_active == 1,
    ).first()
    if not service:
        raise NotFound("Service", service_id)
    return service


def earliest_start(service, target_date: date, local_now: datetime) -> Optional[int]:
    """
    First bookable minute of target_date for the service.

    None → no lower bound (a future day inside the booking window).
    MINUTES_PER_DAY → the whole day is in the past or outside the window.
    """
    if target_date < local_now.date():
        return MINUTES_PER_DAY
    if service.max_advance_days is not None:
        if target_date > local_now.date() + timedelta(days=service.max_advance_days):
            return MINUTES_PER_DAY

    earliest = local_now + timedelta(hours=service.min_advance_hours or 0)
    if earliest.date() > target_date:
        return MINUTES_PER_DAY
    if earliest.date() < target_date:
        return None

    minute = earliest.hour * 60 + earliest.minute
    # 10:00:30 → 10:00 has already started
    if earliest.second or earliest.microsecond:
        minute += 1
    return minute
