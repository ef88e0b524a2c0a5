# backend/app/services/closures.py
"""
Closure management and impact engine.

- create / extend / end early / auto-expire closures
- preview which active appointments a closure period would hit
- move impacted appointments to the nearest free slot (auto-reschedule)
- reschedule suggestions for a single appointment

Closure creation and the impact scan are separate transactions.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Union

from redis import Redis
from sqlalchemy.orm import Session

from ..errors import BusinessClosed, ClosureConflict, InvalidBusinessState, NotFound, SlotConflict
from ..models import Appointments, BusinessClosures
from ..database import write_transaction
from ..schemas.appointments import AppointmentUpdate
from ..schemas.closures import RecurringPattern, ReschedulePolicy
from .booking import update_appointment
from .events import appointment_payload, emit_event
from .lifecycle import ACTIVE_STATUSES
from .slots.calendar_resolver import closure_applies_to_service, load_business
from .slots.config import BookingConfig, get_booking_config, time_str_to_minutes
from .slots.generator import business_now, get_available_slots
from .slots.invalidator import get_affected_dates_from_closure, invalidate_business_cache
from .slots.recurrence import base_span, closure_overlaps_range, iter_closure_spans
from .slots.scope import scope_for

logger = logging.getLogger(__name__)

PAST_START_BUFFER = timedelta(minutes=5)
MAX_SUGGESTIONS_PER_DAY = 3

# Bucket bounds in minutes of day
MORNING_END = 12 * 60
AFTERNOON_END = 17 * 60


@dataclass(frozen=True)
class RescheduleSuggestion:
    appointment_id: int
    original_start: datetime
    new_date: date
    new_start_time: str
    applied: bool


@dataclass(frozen=True)
class RescheduleFailure:
    appointment_id: int
    original_start: datetime
    reason: str


RescheduleResult = Union[RescheduleSuggestion, RescheduleFailure]


# ── Closure management ───────────────────────────────────────────────────


def create_closure(
    db: Session,
    business_id: int,
    start_date: date,
    end_date: date,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
    closure_type: str = "OTHER",
    reason: Optional[str] = None,
    affected_services: Optional[list[int]] = None,
    recurring_pattern: Optional[dict] = None,
    created_by: Optional[int] = None,
    now: Optional[datetime] = None,
    redis: Optional[Redis] = None,
) -> BusinessClosures:
    """
    Create a closure after validating its period.

    Raises:
        ValueError: end before start, start in the past, bad pattern
        ClosureConflict: overlaps another active closure
    """
    closure = _build_closure(
        business_id, start_date, end_date, start_time, end_time, closure_type, reason,
        affected_services, recurring_pattern, created_by,
    )

    with write_transaction(db):
        business = load_business(db, business_id)
        start, _ = base_span(closure)
        if start < business_now(business, now) - PAST_START_BUFFER:
            raise ValueError("Closure cannot start in the past")

        _check_conflicts(db, closure)
        db.add(closure)
        db.commit()
    return _announce_new_closure(db, closure, redis)


def create_emergency_closure(
    db: Session,
    business_id: int,
    reason: str,
    start: Optional[datetime] = None,
    duration_hours: Optional[float] = None,
    created_by: Optional[int] = None,
    now: Optional[datetime] = None,
    redis: Optional[Redis] = None,
) -> BusinessClosures:
    """
    Close immediately. Without a duration the closure runs to the end of
    the start day. No past-date or conflict checks.
    """
    with write_transaction(db):
        business = load_business(db, business_id)
        start = start or business_now(business, now).replace(second=0, microsecond=0)

        if duration_hours:
            end = start + timedelta(hours=duration_hours)
            end_date, end_time = _split_end(end)
        else:
            end_date, end_time = start.date(), None

        closure = _build_closure(
            business_id, start.date(), end_date, start.time(), end_time, "EMERGENCY",
            f"Emergency: {reason}", None, None, created_by,
        )
        db.add(closure)
        db.commit()
    return _announce_new_closure(db, closure, redis)


def create_maintenance_closure(
    db: Session,
    business_id: int,
    description: str,
    start: datetime,
    estimated_hours: float,
    created_by: Optional[int] = None,
    redis: Optional[Redis] = None,
) -> BusinessClosures:
    if estimated_hours <= 0:
        raise ValueError("estimated_hours must be positive")

    end_date, end_time = _split_end(start + timedelta(hours=estimated_hours))
    closure = _build_closure(
        business_id, start.date(), end_date, start.time(), end_time, "MAINTENANCE",
        f"Maintenance: {description}", None, None, created_by,
    )
    with write_transaction(db):
        load_business(db, business_id)
        db.add(closure)
        db.commit()
    return _announce_new_closure(db, closure, redis)


def extend_closure(
    db: Session,
    closure_id: int,
    new_end: datetime,
    redis: Optional[Redis] = None,
) -> BusinessClosures:
    """Move the end of a closure; must stay after its start and conflict-free."""
    with write_transaction(db):
        closure = _get_closure(db, closure_id)
        start, _ = base_span(closure)
        if new_end <= start:
            raise ValueError("New end must be after closure start")

        old_dates = get_affected_dates_from_closure(closure)
        closure.end_date, closure.end_time = _split_end(new_end)
        _check_conflicts(db, closure)
        db.commit()

    db.refresh(closure)
    _invalidate(redis, closure, old_dates)
    logger.info(f"Closure {closure.id} extended to {new_end}")
    return closure


def end_closure_early(
    db: Session,
    closure_id: int,
    end_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    redis: Optional[Redis] = None,
) -> BusinessClosures:
    """Record the actual end and deactivate the closure."""
    with write_transaction(db):
        closure = _get_closure(db, closure_id)
        business = load_business(db, closure.business_id)
        end_at = end_at or business_now(business, now)

        start, _ = base_span(closure)
        if end_at < start:
            raise ValueError("End cannot be before closure start")

        old_dates = get_affected_dates_from_closure(closure)
        if end_at > start:
            closure.end_date, closure.end_time = _split_end(end_at)
        closure.is_active = 0
        db.commit()

    db.refresh(closure)
    _invalidate(redis, closure, old_dates)
    logger.info(f"Closure {closure.id} ended early at {end_at}")
    return closure


def auto_expire_closures(
    db: Session,
    now: Optional[datetime] = None,
    redis: Optional[Redis] = None,
) -> int:
    """Deactivate active closures whose last occurrence has ended. Returns count."""
    with write_transaction(db):
        closures = db.query(BusinessClosures).filter(BusinessClosures.is_active == 1).all()

        expired = []
        for closure in closures:
            try:
                local_now = business_now(closure.business, now)
            except InvalidBusinessState as e:
                logger.warning(f"Skipping closure {closure.id}: {e.message}")
                continue
            if _has_ended(closure, local_now):
                closure.is_active = 0
                expired.append(closure)
        db.commit()

    if not expired:
        return 0

    for closure in expired:
        _invalidate(redis, closure)
    logger.info(f"Auto-expired {len(expired)} closures")
    return len(expired)


# ── Impact ───────────────────────────────────────────────────────────────


def preview_impact(
    db: Session,
    business_id: int,
    start_date: date,
    end_date: date,
    affected_services: Optional[Iterable[int]] = None,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
) -> list[Appointments]:
    """
    Active appointments intersecting the period. Pure read.

    The period is [start_date start_time, end_date end_time); missing times
    mean start/end of day. A non-empty affected_services restricts the
    result to those services.
    """
    load_business(db, business_id)
    range_start = datetime.combine(start_date, start_time or time.min)
    if end_time is not None:
        range_end = datetime.combine(end_date, end_time)
    else:
        range_end = datetime.combine(end_date + timedelta(days=1), time.min)

    query = db.query(Appointments).filter(
        Appointments.business_id == business_id,
        Appointments.status.in_(ACTIVE_STATUSES),
        Appointments.start_time < range_end,
        Appointments.end_time > range_start,
    )
    services = list(affected_services or [])
    if services:
        query = query.filter(Appointments.service_id.in_(services))
    return query.order_by(Appointments.start_time).all()


def impacted_appointments(db: Session, closure: BusinessClosures) -> list[Appointments]:
    """Active appointments hit by any occurrence of the closure."""
    start, _ = base_span(closure)
    candidates = (
        db.query(Appointments)
        .filter(
            Appointments.business_id == closure.business_id,
            Appointments.status.in_(ACTIVE_STATUSES),
            Appointments.end_time > start,
        )
        .order_by(Appointments.start_time)
        .all()
    )
    return [
        appt for appt in candidates
        if closure_applies_to_service(closure, appt.service_id)
        and closure_overlaps_range(closure, appt.start_time, appt.end_time)
    ]


def auto_reschedule(
    db: Session,
    closure_id: int,
    policy: ReschedulePolicy | None = None,
    now: Optional[datetime] = None,
    config: BookingConfig | None = None,
) -> list[RescheduleResult]:
    """
    Find (and with auto_apply, book) a new slot for every impacted appointment.

    Search covers the days after the original date up to
    max_reschedule_days; the earliest date, then earliest time, wins.
    Appointments without a slot are reported as RescheduleFailure and left
    unchanged.
    """
    policy = policy or ReschedulePolicy()
    config = config or get_booking_config()
    closure = _get_closure(db, closure_id)

    results: list[RescheduleResult] = []
    for appt in impacted_appointments(db, closure):
        original_start = appt.start_time
        found = _find_slot(db, appt, policy, now, config)
        if found is None:
            results.append(RescheduleFailure(
                appointment_id=appt.id,
                original_start=original_start,
                reason=f"No available slot within {policy.max_reschedule_days} days",
            ))
            continue

        new_date, new_time = found
        if not policy.auto_apply:
            results.append(RescheduleSuggestion(appt.id, original_start, new_date, new_time, applied=False))
            continue

        try:
            update_appointment(
                db, appt.id, AppointmentUpdate(date=new_date, start_time=new_time), now=now, config=config
            )
        except (SlotConflict, BusinessClosed) as e:
            results.append(RescheduleFailure(appt.id, original_start, e.message))
            continue
        results.append(RescheduleSuggestion(appt.id, original_start, new_date, new_time, applied=True))

    moved = sum(1 for r in results if isinstance(r, RescheduleSuggestion))
    logger.info(
        f"Auto-reschedule for closure={closure_id}: "
        f"{moved} suggested/moved, {len(results) - moved} failed"
    )
    return results


def suggest_reschedule_slots(
    db: Session,
    appointment_id: int,
    max_suggestions: int = 10,
    preferred_time: Optional[str] = None,
    max_days: int = 7,
    allow_weekends: bool = True,
    now: Optional[datetime] = None,
    config: BookingConfig | None = None,
) -> list[dict]:
    """
    Up to max_suggestions free slots (at most 3 per day) for one appointment.

    preferred_time defaults to the bucket of the original start time.
    """
    appt = db.get(Appointments, appointment_id)
    if not appt:
        raise NotFound("Appointment", appointment_id)

    original_min = appt.start_time.hour * 60 + appt.start_time.minute
    bucket = (preferred_time or time_bucket(original_min)).upper()

    suggestions: list[dict] = []
    for day in _search_days(appt.date, max_days, allow_weekends):
        slots = _slots_for(db, appt, day, now, config)
        per_day = [s for s in slots if in_bucket(time_str_to_minutes(s), bucket)]
        for slot in per_day[:MAX_SUGGESTIONS_PER_DAY]:
            suggestions.append({"date": day, "start_time": slot})
            if len(suggestions) >= max_suggestions:
                return suggestions
    return suggestions


def time_bucket(minute: int) -> str:
    if minute < MORNING_END:
        return "MORNING"
    if minute < AFTERNOON_END:
        return "AFTERNOON"
    return "EVENING"


def in_bucket(minute: int, preferred: str) -> bool:
    return preferred == "ANY" or time_bucket(minute) == preferred


# ── Internals ────────────────────────────────────────────────────────────


def _find_slot(db, appt, policy: ReschedulePolicy, now, config) -> Optional[tuple[date, str]]:
    for day in _search_days(appt.date, policy.max_reschedule_days, policy.allow_weekends):
        for slot in _slots_for(db, appt, day, now, config):
            if in_bucket(time_str_to_minutes(slot), policy.preferred_time):
                return day, slot
    return None


def _search_days(original: date, max_days: int, allow_weekends: bool):
    for offset in range(1, max_days + 1):
        day = original + timedelta(days=offset)
        if not allow_weekends and day.weekday() >= 5:
            continue
        yield day


def _slots_for(db, appt, day: date, now, config) -> list[str]:
    return get_available_slots(
        db,
        appt.business_id,
        appt.service_id,
        day,
        scope=scope_for(appt.staff_id),
        now=now,
        config=config,
        exclude_appointment_id=appt.id,
    )


def _build_closure(
    business_id, start_date, end_date, start_time, end_time, closure_type, reason,
    affected_services, recurring_pattern, created_by,
) -> BusinessClosures:
    pattern = None
    if recurring_pattern is not None:
        # ValidationError (a ValueError) for unknown frequency or interval < 1
        pattern = RecurringPattern.model_validate(recurring_pattern)

    closure = BusinessClosures(
        business_id=business_id,
        start_date=start_date,
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
        type=closure_type,
        reason=reason,
        affected_services=json.dumps(list(affected_services)) if affected_services else None,
        recurring_pattern=pattern.model_dump_json(exclude_none=True) if pattern else None,
        created_by=created_by,
        is_active=1,
    )
    start, end = base_span(closure)
    if end <= start:
        raise ValueError("Closure end must be after its start")
    return closure


def _announce_new_closure(db: Session, closure: BusinessClosures, redis: Optional[Redis]) -> BusinessClosures:
    """Post-commit: invalidate the cache and publish closure facts."""
    db.refresh(closure)
    _invalidate(redis, closure)

    logger.info(
        f"Closure created: id={closure.id}, business={closure.business_id}, "
        f"{closure.start_date}..{closure.end_date}, type={closure.type}"
    )
    emit_event("closure_created", {
        "closure_id": closure.id,
        "business_id": closure.business_id,
        "start_date": closure.start_date.isoformat(),
        "end_date": closure.end_date.isoformat(),
        "closure_type": closure.type,
        "reason": closure.reason,
    })

    for appt in impacted_appointments(db, closure):
        emit_event("closure_conflict", {
            **appointment_payload(appt),
            "closure_id": closure.id,
        })
    return closure


def _check_conflicts(db: Session, closure: BusinessClosures) -> None:
    query = db.query(BusinessClosures).filter(
        BusinessClosures.business_id == closure.business_id,
        BusinessClosures.is_active == 1,
    )
    if closure.id is not None:
        query = query.filter(BusinessClosures.id != closure.id)

    conflicting = [
        other.id for other in query.all()
        if any(
            closure_overlaps_range(other, span_start, span_end)
            for span_start, span_end in iter_closure_spans(closure)
        )
    ]
    if conflicting:
        raise ClosureConflict("Closure period conflicts with an existing closure", conflicting)


def _get_closure(db: Session, closure_id: int) -> BusinessClosures:
    closure = db.get(BusinessClosures, closure_id)
    if not closure:
        raise NotFound("Closure", closure_id)
    return closure


def _split_end(end: datetime) -> tuple[date, Optional[time]]:
    """Closure end as (end_date, end_time); midnight ends the previous day."""
    if end.time() == time.min:
        return (end - timedelta(days=1)).date(), None
    return end.date(), end.time()


def _has_ended(closure: BusinessClosures, local_now: datetime) -> bool:
    ended = False
    for _, span_end in iter_closure_spans(closure):
        if span_end > local_now:
            return False
        ended = True
    return ended


def _invalidate(redis: Optional[Redis], closure: BusinessClosures, extra_dates: list[date] | None = None) -> None:
    dates = get_affected_dates_from_closure(closure)
    if dates is None:
        # Recurring: every cached day of the business may be affected
        invalidate_business_cache(redis, closure.business_id)
        return
    if extra_dates:
        dates = sorted(set(dates) | set(extra_dates))
    invalidate_business_cache(redis, closure.business_id, dates)
