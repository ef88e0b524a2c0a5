# backend/app/services/live_view.py
"""
Read-only live views: current hour, today, waiting-room queue.

No writes, no locks. Each appointment is compared with "now" in its own
business timezone.
"""

from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Appointments
from .lifecycle import ACTIVE_STATUSES
from .slots.calendar_resolver import load_business
from .slots.config import get_booking_config
from .slots.generator import business_now


def in_current_hour(
    db: Session,
    customer_id: int,
    now: Optional[datetime] = None,
) -> list[Appointments]:
    """
    Customer's upcoming active appointments starting before the end of the
    current clock hour, ascending by start.
    """
    # Local wall times differ from UTC by at most a day either way
    reference = (now or datetime.utcnow()).replace(tzinfo=None)
    candidates = (
        db.query(Appointments)
        .filter(
            Appointments.customer_id == customer_id,
            Appointments.status.in_(ACTIVE_STATUSES),
            Appointments.start_time >= reference - timedelta(days=1),
            Appointments.start_time < reference + timedelta(days=1),
        )
        .order_by(Appointments.start_time)
        .all()
    )

    result = []
    for appt in candidates:
        local_now = business_now(appt.business, now)
        hour_end = local_now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        if local_now <= appt.start_time < hour_end:
            result.append(appt)
    return result


def nearest_in_current_hour(
    db: Session,
    customer_id: int,
    now: Optional[datetime] = None,
) -> Optional[Appointments]:
    """Upcoming appointment in the current hour with the smallest start - now."""
    upcoming = in_current_hour(db, customer_id, now)
    if not upcoming:
        return None
    return min(upcoming, key=lambda appt: appt.start_time - business_now(appt.business, now))


def todays_appointments(
    db: Session,
    business_id: int,
    now: Optional[datetime] = None,
) -> list[Appointments]:
    """Every appointment of the business today, any status."""
    business = load_business(db, business_id)
    today = business_now(business, now).date()
    return (
        db.query(Appointments)
        .filter(Appointments.business_id == business_id, Appointments.date == today)
        .order_by(Appointments.start_time)
        .all()
    )


def appointment_stats(db: Session, business_id: int, target_date: date) -> dict:
    """Counts per status for a business day."""
    rows = (
        db.query(Appointments.status, func.count(Appointments.id))
        .filter(Appointments.business_id == business_id, Appointments.date == target_date)
        .group_by(Appointments.status)
        .all()
    )
    by_status = {status: count for status, count in rows}
    return {"total": sum(by_status.values()), "by_status": by_status}


def monitor_queue(
    db: Session,
    business_id: int,
    target_date: Optional[date] = None,
    max_queue_size: Optional[int] = None,
    include_stats: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """
    Waiting-room queue: the day's non-terminal appointments by ascending
    start, capped at max_queue_size. On the current day, appointments that
    have already ended are left out.
    """
    config = get_booking_config()
    if max_queue_size is None:
        max_queue_size = config.default_queue_size
    if not 1 <= max_queue_size <= config.max_queue_size:
        raise ValueError(f"max_queue_size must be between 1 and {config.max_queue_size}")

    business = load_business(db, business_id)
    local_now = business_now(business, now)
    target_date = target_date or local_now.date()

    query = db.query(Appointments).filter(
        Appointments.business_id == business_id,
        Appointments.date == target_date,
        Appointments.status.in_(ACTIVE_STATUSES),
    )
    if target_date == local_now.date():
        query = query.filter(Appointments.end_time > local_now)

    queue = query.order_by(Appointments.start_time, Appointments.id).limit(max_queue_size).all()

    return {
        "business_id": business_id,
        "date": target_date,
        "queue": queue,
        "stats": appointment_stats(db, business_id, target_date) if include_stats else None,
    }
