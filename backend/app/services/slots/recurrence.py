# backend/app/services/slots/recurrence.py
"""
Closure span expansion.

A closure covers the continuous span
    [start_date + start_time, end_date + end_time)
where a missing start_time means 00:00 and a missing end_time means the end
of end_date. Recurring closures repeat that span every `interval`
weeks/months/years until the pattern's endDate, bounded by a lookahead
horizon so expansion is always finite.

Pattern JSON: {"frequency": "WEEKLY"|"MONTHLY"|"YEARLY", "interval": 1, "endDate": "2026-12-31"}
"""

import calendar
import json
from datetime import date, datetime, time, timedelta
from typing import Iterator, Optional

from .config import get_booking_config
from .intervals import Interval, normalize

FREQUENCIES = ("WEEKLY", "MONTHLY", "YEARLY")


def parse_pattern(raw) -> Optional[dict]:
    """Return a normalized pattern dict or None for one-off closures."""
    if not raw:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, dict):
        return None

    frequency = str(raw.get("frequency", "WEEKLY")).upper()
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown recurrence frequency: {frequency}")

    interval = raw.get("interval")
    interval = 1 if interval is None else int(interval)
    if interval < 1:
        raise ValueError("Recurrence interval must be >= 1")

    end = raw.get("endDate") or raw.get("end_date")
    if isinstance(end, str):
        end = date.fromisoformat(end[:10])

    return {"frequency": frequency, "interval": interval, "end_date": end}


def base_span(closure) -> tuple[datetime, datetime]:
    """Concrete [start, end) datetimes of the closure's first occurrence."""
    start = datetime.combine(closure.start_date, closure.start_time or time.min)
    if closure.end_time is not None:
        end = datetime.combine(closure.end_date, closure.end_time)
    else:
        end = datetime.combine(closure.end_date + timedelta(days=1), time.min)
    return start, end


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _shift(value: datetime, frequency: str, steps: int) -> datetime:
    if frequency == "WEEKLY":
        return value + timedelta(weeks=steps)
    if frequency == "MONTHLY":
        return _add_months(value, steps)
    return _add_months(value, 12 * steps)


def iter_closure_spans(
    closure,
    until: Optional[date] = None,
    horizon_days: Optional[int] = None,
) -> Iterator[tuple[datetime, datetime]]:
    """
    Lazily yield the closure's [start, end) spans in chronological order.

    Stops at the pattern end date, at `until` (inclusive) or at the
    lookahead horizon counted from the first occurrence, whichever is first.
    """
    start, end = base_span(closure)
    if end <= start:
        return

    yield start, end

    pattern = parse_pattern(closure.recurring_pattern)
    if pattern is None:
        return

    if horizon_days is None:
        horizon_days = get_booking_config().recurring_horizon_days
    limit = closure.start_date + timedelta(days=horizon_days)
    if pattern["end_date"] is not None:
        limit = min(limit, pattern["end_date"])
    if until is not None:
        limit = min(limit, until)

    duration = end - start
    step = 1
    while True:
        occurrence = _shift(start, pattern["frequency"], step * pattern["interval"])
        if occurrence.date() > limit:
            return
        yield occurrence, occurrence + duration
        step += 1


def closure_blocks_for_date(closure, target_date: date) -> list[Interval]:
    """Minute intervals of target_date covered by any closure occurrence."""
    day_start = datetime.combine(target_date, time.min)
    day_end = day_start + timedelta(days=1)

    blocks: list[Interval] = []
    for span_start, span_end in iter_closure_spans(closure, until=target_date):
        if span_start >= day_end or span_end <= day_start:
            continue
        clipped_start = max(span_start, day_start)
        clipped_end = min(span_end, day_end)
        start_min = int((clipped_start - day_start).total_seconds() // 60)
        end_min = int((clipped_end - day_start).total_seconds() // 60)
        if start_min < end_min:
            blocks.append(Interval(start_min, end_min))
    return normalize(blocks)


def closure_overlaps_range(closure, range_start: datetime, range_end: datetime) -> bool:
    """True if any occurrence intersects [range_start, range_end)."""
    for span_start, span_end in iter_closure_spans(closure, until=range_end.date()):
        if span_start < range_end and range_start < span_end:
            return True
    return False
