# backend/app/services/slots/__init__.py
"""
Slots calculation module.

Level 1: Open intervals from hours, overrides and closures (cached in Redis Sorted Sets)
Level 2: Bookable start times (calculated on-the-fly against live appointments)
"""

from .config import BookingConfig, LifecyclePolicy, get_booking_config, get_lifecycle_policy
from .intervals import Interval
from .scope import BusinessWide, Scope, StaffScoped, scope_for
from .calendar_resolver import (
    resolve_open_intervals,
    compute_open_intervals,
    get_day_status,
    upsert_hours_override,
    delete_hours_override,
)
from .generator import generate_slots, get_available_slots
from .redis_store import SlotsRedisStore
from .invalidator import invalidate_business_cache

__all__ = [
    "BookingConfig",
    "LifecyclePolicy",
    "get_booking_config",
    "get_lifecycle_policy",
    "Interval",
    "BusinessWide",
    "Scope",
    "StaffScoped",
    "scope_for",
    "resolve_open_intervals",
    "compute_open_intervals",
    "get_day_status",
    "upsert_hours_override",
    "delete_hours_override",
    "generate_slots",
    "get_available_slots",
    "SlotsRedisStore",
    "invalidate_business_cache",
]
