# backend/app/services/slots/calendar_resolver.py
"""
Level 1: Calendar resolution.

Produces the ordered, non-overlapping open intervals of a business (or one
staff member) on a date, in business-local wall time.

Contains:
✓ weekly business_hours of the business
✓ date-specific hours override (replaces the weekday entirely)
✓ active closures, expanded from recurring patterns, filtered by service
✓ staff individual working hours (intersection)

Does NOT contain:
✗ Appointments (subtracted by the slot generator)
"""

import json
import logging
from datetime import date, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...database import write_transaction
from ...errors import InvalidBusinessState, NotFound
from ...models import Businesses, BusinessHoursOverrides, BusinessClosures, Staff
from .config import BookingConfig, get_booking_config
from .intervals import Interval, intersect, normalize, subtract
from .invalidator import invalidate_business_cache
from .recurrence import closure_blocks_for_date
from .redis_store import SlotsRedisStore
from .scope import BusinessWide, Scope, StaffScoped

logger = logging.getLogger(__name__)

DAY_KEYS = [
    ("mon", "monday"),
    ("tue", "tuesday"),
    ("wed", "wednesday"),
    ("thu", "thursday"),
    ("fri", "friday"),
    ("sat", "saturday"),
    ("sun", "sunday"),
]


def resolve_open_intervals(
    db: Session,
    business_id: int,
    target_date: date,
    scope: Scope = BusinessWide(),
    service_id: Optional[int] = None,
    redis: Optional[Redis] = None,
    config: BookingConfig | None = None,
) -> list[Interval]:
    """
    Resolve open intervals for business (+staff) on target_date.

    Raises:
        NotFound: unknown business or staff
        InvalidBusinessState: business has no usable timezone/hours
    """
    business = load_business(db, business_id)
    staff = load_staff(db, business_id, scope.staff_id) if isinstance(scope, StaffScoped) else None

    if staff is not None and not staff.is_active:
        return []

    store = SlotsRedisStore(redis, config) if redis is not None else None
    if store is not None:
        try:
            cached = store.get_open_intervals(business_id, scope.cache_key, service_id, target_date)
        except RedisError as e:
            logger.warning(f"Slots cache read failed for business={business_id}: {e}")
            cached = None
        if cached is not None:
            return cached

    override = _get_hours_override(db, business_id, target_date)
    closures = _get_candidate_closures(db, business_id, target_date)

    intervals = compute_open_intervals(
        business_hours=_parse_schedule(business.business_hours, f"business {business_id}"),
        target_date=target_date,
        override=override,
        closures=closures,
        service_id=service_id,
        staff_schedule=_staff_schedule(staff),
    )

    if store is not None:
        try:
            store.store_open_intervals(business_id, scope.cache_key, service_id, target_date, intervals)
        except RedisError as e:
            logger.warning(f"Slots cache write failed for business={business_id}: {e}")

    return intervals


def compute_open_intervals(
    business_hours: dict,
    target_date: date,
    override=None,
    closures: list | None = None,
    service_id: Optional[int] = None,
    staff_schedule: Optional[dict] = None,
) -> list[Interval]:
    """
    Pure resolution step (no I/O).

    override: object with is_open/open_time/close_time/breaks, or None
    closures: closure objects (start/end date+time, affected_services, recurring_pattern)
    staff_schedule: parsed staff schedule, None = inherit business hours
    """
    if override is not None:
        intervals = _override_intervals(override)
    else:
        intervals = get_day_intervals(business_hours, target_date)

    if not intervals:
        return []

    holes: list[Interval] = []
    for closure in closures or []:
        if not closure_applies_to_service(closure, service_id):
            continue
        holes.extend(closure_blocks_for_date(closure, target_date))
    intervals = subtract(intervals, holes)

    if staff_schedule is not None:
        intervals = intersect(intervals, get_day_intervals(staff_schedule, target_date))

    return intervals


def closure_applies_to_service(closure, service_id: Optional[int]) -> bool:
    """
    Empty affected_services → applies to every service. A restricted closure
    only applies when the requested service is in its list.
    """
    services = parse_affected_services(closure.affected_services)
    if not services:
        return True
    if service_id is None:
        return False
    return service_id in services


def parse_affected_services(raw) -> list[int]:
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    return [int(s) for s in raw]


# ── Schedule parsing ─────────────────────────────────────────────────────


def get_day_intervals(schedule: dict, target_date: date) -> list[Interval]:
    """
    Extract working intervals for target_date from a weekly schedule.

    Supported day values (keys "0".."6", "mon".."sun" or "monday".."sunday"):
      - [["09:00", "12:00"], ["13:00", "18:00"]]
      - {"start": "09:00", "end": "18:00"}
      - {"isOpen": true, "openTime": "09:00", "closeTime": "18:00",
         "breaks": [{"startTime": "12:00", "endTime": "13:00"}]}
      - null / [] / {"isOpen": false} → closed
    """
    weekday = target_date.weekday()  # 0 = Monday
    short_name, long_name = DAY_KEYS[weekday]

    day_data = None
    for key in (str(weekday), short_name, long_name):
        if key in schedule:
            day_data = schedule[key]
            break

    if day_data is None:
        return []

    if isinstance(day_data, list):
        return normalize(
            Interval.from_strings(item[0], item[1])
            for item in day_data
            if len(item) == 2
        )

    if isinstance(day_data, dict):
        if "isOpen" in day_data or "openTime" in day_data:
            if not day_data.get("isOpen", True):
                return []
            return _hours_with_breaks(
                day_data.get("openTime"),
                day_data.get("closeTime"),
                day_data.get("breaks") or [],
            )
        start = day_data.get("start")
        end = day_data.get("end")
        if start and end:
            return [Interval.from_strings(start, end)]

    return []


def _hours_with_breaks(open_time: Optional[str], close_time: Optional[str], breaks: list) -> list[Interval]:
    if not open_time or not close_time:
        return []
    hours = [Interval.from_strings(open_time, close_time)]
    pauses = [
        Interval.from_strings(b["startTime"], b["endTime"])
        for b in breaks
        if b.get("startTime") and b.get("endTime")
    ]
    return subtract(hours, pauses)


def _override_intervals(override) -> list[Interval]:
    if not override.is_open:
        return []
    breaks = override.breaks
    if isinstance(breaks, str):
        breaks = json.loads(breaks) if breaks else []
    return _hours_with_breaks(override.open_time, override.close_time, breaks or [])


def _parse_schedule(raw, owner: str) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        schedule = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        raise InvalidBusinessState(f"Working hours of {owner} are not valid JSON")
    if not isinstance(schedule, dict):
        raise InvalidBusinessState(f"Working hours of {owner} must be an object")
    return schedule


def _staff_schedule(staff) -> Optional[dict]:
    """Parsed staff hours, or None when the staff member inherits business hours."""
    if staff is None or not staff.work_schedule:
        return None
    schedule = _parse_schedule(staff.work_schedule, f"staff {staff.id}")
    return schedule or None


# ── Day status ───────────────────────────────────────────────────────────


def get_day_status(
    db: Session,
    business_id: int,
    target_date: date,
    config: BookingConfig | None = None,
) -> dict:
    """
    Open/closed status of a business day, with the next open date when closed.
    """
    config = config or get_booking_config()
    business = load_business(db, business_id)
    override = _get_hours_override(db, business_id, target_date)

    intervals = resolve_open_intervals(db, business_id, target_date, config=config)

    next_open_date = None
    if not intervals:
        current = target_date + timedelta(days=1)
        last = target_date + timedelta(days=config.next_open_search_days)
        while current <= last:
            if resolve_open_intervals(db, business_id, current, config=config):
                next_open_date = current
                break
            current += timedelta(days=1)

    return {
        "business_id": business_id,
        "date": target_date.isoformat(),
        "is_open": bool(intervals),
        "intervals": [list(i.as_strings()) for i in intervals],
        "is_override": override is not None,
        "override_reason": override.reason if override is not None else None,
        "next_open_date": next_open_date.isoformat() if next_open_date else None,
        "timezone": business.timezone,
    }


# ── Hours overrides ──────────────────────────────────────────────────────


def upsert_hours_override(
    db: Session,
    business_id: int,
    target_date: date,
    is_open: bool,
    open_time: Optional[str] = None,
    close_time: Optional[str] = None,
    breaks: Optional[list] = None,
    reason: Optional[str] = None,
    redis: Optional[Redis] = None,
) -> BusinessHoursOverrides:
    """Create or replace the hours override of a date."""
    if is_open:
        if not open_time or not close_time:
            raise ValueError("open_time and close_time are required for an open override")
        Interval.from_strings(open_time, close_time)

    with write_transaction(db):
        load_business(db, business_id)
        override = _get_hours_override(db, business_id, target_date)
        if override is None:
            override = BusinessHoursOverrides(business_id=business_id, date=target_date)
            db.add(override)

        override.is_open = 1 if is_open else 0
        override.open_time = open_time if is_open else None
        override.close_time = close_time if is_open else None
        override.breaks = json.dumps(breaks) if breaks else None
        override.reason = reason
        db.commit()

    db.refresh(override)
    invalidate_business_cache(redis, business_id, [target_date])

    logger.info(f"Hours override set: business={business_id}, date={target_date}, is_open={is_open}")
    return override


def delete_hours_override(
    db: Session,
    business_id: int,
    target_date: date,
    redis: Optional[Redis] = None,
) -> None:
    with write_transaction(db):
        override = _get_hours_override(db, business_id, target_date)
        if override is None:
            raise NotFound("Hours override", f"{business_id}/{target_date}")
        db.delete(override)
        db.commit()
    invalidate_business_cache(redis, business_id, [target_date])


# ── Database helpers ─────────────────────────────────────────────────────


def load_business(db: Session, business_id: int) -> Businesses:
    """Get business by ID, validating its timezone."""
    business = db.get(Businesses, business_id)
    if not business:
        raise NotFound("Business", business_id)
    business_zone(business)
    return business


def business_zone(business) -> ZoneInfo:
    if not business.timezone:
        raise InvalidBusinessState(f"Business {business.id} has no timezone configured")
    try:
        return ZoneInfo(business.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidBusinessState(
            f"Business {business.id} has an unknown timezone: {business.timezone}"
        )


def load_staff(db: Session, business_id: int, staff_id: int) -> Staff:
    staff = db.get(Staff, staff_id)
    if not staff or staff.business_id != business_id:
        raise NotFound("Staff", staff_id)
    return staff


def _get_hours_override(db: Session, business_id: int, target_date: date):
    return (
        db.query(BusinessHoursOverrides)
        .filter(
            BusinessHoursOverrides.business_id == business_id,
            BusinessHoursOverrides.date == target_date,
        )
        .first()
    )


def _get_candidate_closures(db: Session, business_id: int, target_date: date) -> list:
    """Active closures that may cover target_date (recurring ones are checked on expansion)."""
    # Spans may end at a time on end_date, or run into the next day, so look back one day
    return (
        db.query(BusinessClosures)
        .filter(
            BusinessClosures.business_id == business_id,
            BusinessClosures.is_active == 1,
            BusinessClosures.start_date <= target_date,
            or_(
                BusinessClosures.end_date >= target_date - timedelta(days=1),
                BusinessClosures.recurring_pattern.isnot(None),
            ),
        )
        .order_by(BusinessClosures.start_date)
        .all()
    )
