# backend/app/services/booking.py
"""
Booking transactor.

The check-then-insert runs inside one transaction that holds a write lock
on the business row (and the staff row when staff-scoped):
SELECT ... FOR UPDATE on PostgreSQL, BEGIN IMMEDIATE on SQLite (see
database.write_transaction). A slot is accepted only if it is still a
member of the slot generator output at that point.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import write_transaction
from ..errors import BusinessClosed, InvalidStateTransition, NotFound, SlotConflict
from ..models import Appointments, Businesses, Staff
from ..schemas.appointments import AppointmentUpdate
from .events import appointment_payload, emit_event
from .lifecycle import ACTIVE_STATUSES, AppointmentStatus
from .slots.calendar_resolver import load_business, load_staff, resolve_open_intervals
from .slots.config import BookingConfig, get_booking_config, minutes_to_time_str, time_str_to_minutes
from .slots.generator import (
    booked_blocks,
    business_now,
    earliest_start,
    generate_slots,
    get_service,
    load_conflicting_appointments,
)
from .slots.scope import scope_for

logger = logging.getLogger(__name__)

NON_NULLABLE_FIELDS = ("date", "start_time", "price")
PLAIN_FIELDS = {"customer_notes", "internal_notes", "price"}


def book(
    db: Session,
    business_id: int,
    service_id: int,
    customer_id: int,
    target_date: date,
    start_time: str,
    staff_id: Optional[int] = None,
    customer_notes: Optional[str] = None,
    now: Optional[datetime] = None,
    config: BookingConfig | None = None,
) -> Appointments:
    """
    Create an appointment at target_date/start_time ("HH:MM").

    Status is CONFIRMED when the business auto-confirms, PENDING otherwise.

    Raises:
        NotFound: unknown business, service or staff
        BusinessClosed: no open hours cover the requested time
        SlotConflict: slot taken, in the past, or off the slot grid
    """
    config = config or get_booking_config()
    start_min = time_str_to_minutes(start_time)

    try:
        with write_transaction(db):
            _lock_scope(db, business_id, staff_id)
            business = load_business(db, business_id)
            service = get_service(db, business_id, service_id)
            if staff_id is not None:
                _require_active_staff(db, business_id, staff_id)

            start_dt, end_dt = _validate_slot(
                db, business, service, target_date, start_min, staff_id, now, config
            )

            confirmed = _auto_confirm(business)
            appt = Appointments(
                business_id=business_id,
                service_id=service_id,
                staff_id=staff_id,
                customer_id=customer_id,
                date=target_date,
                start_time=start_dt,
                end_time=end_dt,
                status=AppointmentStatus.CONFIRMED.value if confirmed else AppointmentStatus.PENDING.value,
                price=service.price,
                currency=service.currency,
                customer_notes=customer_notes,
                confirmed_at=datetime.utcnow() if confirmed else None,
            )
            db.add(appt)
            db.commit()
    except IntegrityError:
        raise SlotConflict(f"Slot {target_date} {start_time} was taken concurrently")

    db.refresh(appt)
    logger.info(
        f"Appointment booked: id={appt.id}, business={business_id}, "
        f"staff={staff_id}, {target_date} {start_time}, status={appt.status}"
    )
    emit_event("appointment_created", appointment_payload(appt))
    return appt


def update_appointment(
    db: Session,
    appointment_id: int,
    update: AppointmentUpdate,
    now: Optional[datetime] = None,
    config: BookingConfig | None = None,
) -> Appointments:
    """
    Apply the fields set on `update` to an appointment.

    Overlap validation re-runs only when date/start_time/staff_id change.
    An explicit staff_id=None unassigns the appointment; None for date,
    start_time or price keeps the current value.
    """
    changes = update.model_dump(exclude_unset=True)
    for field in NON_NULLABLE_FIELDS:
        if changes.get(field) is None:
            changes.pop(field, None)

    config = config or get_booking_config()

    try:
        with write_transaction(db):
            appt = db.get(Appointments, appointment_id)
            if not appt:
                raise NotFound("Appointment", appointment_id)

            new_date = changes.get("date", appt.date)
            new_staff = changes.get("staff_id", appt.staff_id)
            old_start_min = appt.start_time.hour * 60 + appt.start_time.minute
            start_min = (
                time_str_to_minutes(changes["start_time"]) if "start_time" in changes else old_start_min
            )
            reschedule = (
                new_date != appt.date
                or start_min != old_start_min
                or new_staff != appt.staff_id
            )

            if reschedule:
                if appt.status not in ACTIVE_STATUSES:
                    raise InvalidStateTransition(
                        appt.status, appt.status, "finished appointments cannot be moved"
                    )
                _lock_scope(db, appt.business_id, new_staff)
                if new_staff is not None:
                    _require_active_staff(db, appt.business_id, new_staff)
                business = load_business(db, appt.business_id)
                service = get_service(db, appt.business_id, appt.service_id)
                start_dt, end_dt = _validate_slot(
                    db, business, service, new_date, start_min, new_staff, now, config,
                    exclude_appointment_id=appt.id,
                )
                appt.date = new_date
                appt.start_time = start_dt
                appt.end_time = end_dt
                appt.staff_id = new_staff

            for field in PLAIN_FIELDS & set(changes):
                setattr(appt, field, changes[field])

            appt.updated_at = datetime.utcnow()
            db.commit()
    except IntegrityError:
        raise SlotConflict(f"Slot {new_date} {minutes_to_time_str(start_min)} was taken concurrently")

    db.refresh(appt)
    event_type = "appointment_rescheduled" if reschedule else "appointment_updated"
    logger.info(f"Appointment {appt.id} updated ({event_type})")
    emit_event(event_type, appointment_payload(appt))
    return appt


# ── Internals ────────────────────────────────────────────────────────────


def _lock_scope(db: Session, business_id: int, staff_id: Optional[int]) -> None:
    """Take the scope write lock for the rest of the transaction."""
    business = (
        db.query(Businesses)
        .filter(Businesses.id == business_id)
        .with_for_update()
        .first()
    )
    if not business:
        raise NotFound("Business", business_id)
    if staff_id is not None:
        db.query(Staff).filter(Staff.id == staff_id).with_for_update().first()


def _require_active_staff(db: Session, business_id: int, staff_id: int) -> None:
    staff = load_staff(db, business_id, staff_id)
    if not staff.is_active:
        raise SlotConflict(f"Staff {staff_id} is not taking appointments")


def _validate_slot(
    db: Session,
    business,
    service,
    target_date: date,
    start_min: int,
    staff_id: Optional[int],
    now: Optional[datetime],
    config: BookingConfig,
    exclude_appointment_id: Optional[int] = None,
) -> tuple[datetime, datetime]:
    """Check start_min is an offered slot; return naive local [start, end)."""
    scope = scope_for(staff_id)
    requested = f"{target_date} {minutes_to_time_str(start_min)}"

    intervals = resolve_open_intervals(
        db, business.id, target_date, scope=scope, service_id=service.id, config=config
    )
    if not intervals:
        raise BusinessClosed(f"Business {business.id} is closed on {target_date}")
    if not any(i.contains(start_min, start_min + service.duration_min) for i in intervals):
        raise BusinessClosed(f"{requested} is outside opening hours")

    not_before = earliest_start(service, target_date, business_now(business, now))
    booked = booked_blocks(
        load_conflicting_appointments(db, business.id, target_date, scope, exclude_appointment_id)
    )
    starts = generate_slots(
        intervals,
        duration_min=service.duration_min,
        buffer_min=service.break_min or 0,
        step_min=config.slot_step_minutes,
        booked=booked,
        not_before=not_before,
    )
    if start_min not in starts:
        raise SlotConflict(f"Slot {requested} is not available")

    start_dt = datetime.combine(target_date, datetime.min.time()) + timedelta(minutes=start_min)
    return start_dt, start_dt + timedelta(minutes=service.duration_min)


def _auto_confirm(business) -> bool:
    if business.auto_confirm is None:
        return settings.auto_confirm_default
    return bool(business.auto_confirm)
