# backend/app/services/slots/invalidator.py
"""
Cache invalidation for resolved open intervals.

Triggers:
✓ Closure created / extended / ended / expired → invalidate affected dates
✓ Hours override created/deleted → invalidate that date

Does NOT trigger:
✗ Appointment created/updated/cancelled (bookings are never cached)
"""

import logging
from datetime import date, timedelta
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from .recurrence import iter_closure_spans
from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


def invalidate_business_cache(
    redis: Optional[Redis],
    business_id: int,
    dates: list[date] | None = None,
) -> int:
    """
    Invalidate cached intervals for a business.

    Args:
        redis: Redis client (None → nothing cached, nothing to do)
        business_id: Business ID
        dates: Specific dates to invalidate, or None for all cached dates

    Returns:
        Number of deleted cache keys
    """
    if redis is None:
        return 0
    try:
        return SlotsRedisStore(redis).delete_business_days(business_id, dates)
    except RedisError as e:
        logger.error(f"Slots cache invalidation failed for business={business_id}: {e}")
        return 0


def get_affected_dates(date_start: date, date_end: date) -> list[date]:
    """List of dates in [date_start, date_end]."""
    if date_start > date_end:
        date_start, date_end = date_end, date_start

    dates = []
    current = date_start
    while current <= date_end:
        dates.append(current)
        current += timedelta(days=1)
    return dates


def get_affected_dates_from_closure(closure) -> list[date] | None:
    """
    Dates touched by a closure, or None when it recurs (invalidate all).
    """
    if closure.recurring_pattern:
        return None

    dates: list[date] = []
    for span_start, span_end in iter_closure_spans(closure):
        last = (span_end - timedelta(microseconds=1)).date()
        dates.extend(get_affected_dates(span_start.date(), last))
    return dates
