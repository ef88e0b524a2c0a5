# backend/app/services/slots/redis_store.py
"""
Redis storage for resolved open intervals using Sorted Sets.

Key format: slots:open:{business_id}:{scope}:{service}:{date}
Value: Sorted Set where member = "HH:MM-HH:MM", score = start minute.

Sentinel: "__empty__" with score=-1 marks "calculated, closed all day".
Only the calendar layer (hours, overrides, closures) is cached; bookings
are always read live from the database.
"""

from datetime import date
from typing import Optional

from redis import Redis

from .config import BookingConfig, get_booking_config
from .intervals import Interval


EMPTY_SENTINEL = "__empty__"


def _decode(member) -> str:
    return member.decode() if isinstance(member, bytes) else member


class SlotsRedisStore:
    """Redis storage wrapper for per-day open intervals."""

    KEY_PREFIX = "slots:open"

    def __init__(self, redis: Redis, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()

    def _key(self, business_id: int, scope_key: str, service_id: Optional[int], dt: date) -> str:
        service_key = service_id if service_id is not None else "any"
        return f"{self.KEY_PREFIX}:{business_id}:{scope_key}:{service_key}:{dt.isoformat()}"

    # ── Write ────────────────────────────────────────────────────────────

    def store_open_intervals(
        self,
        business_id: int,
        scope_key: str,
        service_id: Optional[int],
        dt: date,
        intervals: list[Interval],
    ) -> None:
        """Store resolved intervals for a day. Empty list → sentinel is stored."""
        key = self._key(business_id, scope_key, service_id, dt)
        pipe = self.redis.pipeline()

        pipe.delete(key)
        if intervals:
            mapping = {}
            for interval in intervals:
                start, end = interval.as_strings()
                mapping[f"{start}-{end}"] = interval.start
            pipe.zadd(key, mapping)
        else:
            pipe.zadd(key, {EMPTY_SENTINEL: -1})
        pipe.expire(key, self.config.cache_ttl_seconds)

        pipe.execute()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_open_intervals(
        self,
        business_id: int,
        scope_key: str,
        service_id: Optional[int],
        dt: date,
    ) -> list[Interval] | None:
        """
        Get cached intervals for a day.

        Returns:
            Sorted list of intervals, or None on cache miss.
        """
        key = self._key(business_id, scope_key, service_id, dt)
        if not self.redis.exists(key):
            return None

        members = self.redis.zrangebyscore(key, 0, "+inf")
        intervals = []
        for member in members:
            value = _decode(member)
            if value == EMPTY_SENTINEL:
                continue
            start, end = value.split("-")
            intervals.append(Interval.from_strings(start, end))
        return intervals

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_business_days(
        self,
        business_id: int,
        dates: list[date] | None = None,
    ) -> int:
        """
        Delete cached intervals.

        Args:
            business_id: Business ID
            dates: Specific dates, or None to delete all for the business.

        Returns:
            Number of deleted keys.
        """
        if dates:
            keys = []
            for dt in dates:
                keys.extend(self.redis.keys(f"{self.KEY_PREFIX}:{business_id}:*:{dt.isoformat()}"))
        else:
            keys = self.redis.keys(f"{self.KEY_PREFIX}:{business_id}:*")

        if not keys:
            return 0

        return self.redis.delete(*keys)
