# backend/app/services/slots/config.py
"""
Booking configuration for slots calculation and lifecycle policy.
"""

from dataclasses import dataclass
from functools import lru_cache

from ...config import settings


ALLOWED_STEPS = (5, 10, 15, 20, 30, 60)
MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for booking/slots system.

    Attributes:
        slot_step_minutes: Grid step for candidate start times
        recurring_horizon_days: How far recurring closures are expanded
        cache_ttl_seconds: Redis TTL for resolved open intervals
        max_batch_size: Upper bound of ids per batch transition
        default_queue_size / max_queue_size: Monitor queue bounds
        next_open_search_days: Horizon for "next open day" lookups
    """
    slot_step_minutes: int = 30
    recurring_horizon_days: int = 730
    cache_ttl_seconds: int = 86400
    max_batch_size: int = 50
    default_queue_size: int = 10
    max_queue_size: int = 100
    next_open_search_days: int = 60

    def __post_init__(self):
        """Validate configuration."""
        if self.slot_step_minutes not in ALLOWED_STEPS:
            raise ValueError(
                f"slot_step_minutes must be one of {ALLOWED_STEPS}, got {self.slot_step_minutes}"
            )

    @property
    def slots_per_day(self) -> int:
        return MINUTES_PER_DAY // self.slot_step_minutes


@dataclass(frozen=True)
class LifecyclePolicy:
    """
    Temporal preconditions for lifecycle transitions.

    Both default to off: the platform historically allowed completing or
    marking no-show at any time.
    """
    require_end_passed_for_completion: bool = False
    require_start_passed_for_no_show: bool = False


@lru_cache
def get_booking_config() -> BookingConfig:
    """Get booking configuration (singleton, read from settings)."""
    return BookingConfig(
        slot_step_minutes=settings.slot_step_minutes,
        recurring_horizon_days=settings.recurring_horizon_days,
        cache_ttl_seconds=settings.slots_cache_ttl_seconds,
    )


@lru_cache
def get_lifecycle_policy() -> LifecyclePolicy:
    return LifecyclePolicy(
        require_end_passed_for_completion=settings.require_end_passed_for_completion,
        require_start_passed_for_no_show=settings.require_start_passed_for_no_show,
    )


# ── Time helpers ─────────────────────────────────────────────────────────


def time_str_to_minutes(value: str) -> int:
    """ "09:30" → 570. "24:00" is accepted as end of day."""
    hour, minute = value.strip().split(":")[:2]
    total = int(hour) * 60 + int(minute)
    if total < 0 or total > MINUTES_PER_DAY or int(minute) >= 60:
        raise ValueError(f"Invalid time string: {value!r}")
    return total


def minutes_to_time_str(minutes: int) -> str:
    """570 → "09:30"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
