# backend/app/services/slots/intervals.py
"""
Minute-of-day interval arithmetic.

All intervals are half-open [start, end) in minutes since local midnight.
Lists returned by these helpers are sorted and non-overlapping.
"""

from dataclasses import dataclass
from typing import Iterable

from .config import MINUTES_PER_DAY, minutes_to_time_str, time_str_to_minutes


@dataclass(frozen=True, order=True)
class Interval:
    start: int
    end: int

    def __post_init__(self):
        if not 0 <= self.start < self.end <= MINUTES_PER_DAY:
            raise ValueError(f"Invalid interval [{self.start}, {self.end})")

    @classmethod
    def from_strings(cls, start: str, end: str) -> "Interval":
        return cls(time_str_to_minutes(start), time_str_to_minutes(end))

    @property
    def duration(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def contains(self, start: int, end: int) -> bool:
        return self.start <= start and end <= self.end

    def as_strings(self) -> tuple[str, str]:
        return minutes_to_time_str(self.start), minutes_to_time_str(self.end)


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open overlap: back-to-back intervals do not overlap."""
    return start_a < end_b and start_b < end_a


def normalize(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and merge overlapping or touching intervals."""
    result: list[Interval] = []
    for interval in sorted(intervals):
        if result and interval.start <= result[-1].end:
            last = result[-1]
            if interval.end > last.end:
                result[-1] = Interval(last.start, interval.end)
        else:
            result.append(interval)
    return result


def subtract(base: Iterable[Interval], holes: Iterable[Interval]) -> list[Interval]:
    """Remove every hole from base."""
    result = normalize(base)
    for hole in normalize(holes):
        pieces: list[Interval] = []
        for interval in result:
            if not interval.overlaps(hole):
                pieces.append(interval)
                continue
            if interval.start < hole.start:
                pieces.append(Interval(interval.start, hole.start))
            if hole.end < interval.end:
                pieces.append(Interval(hole.end, interval.end))
        result = pieces
    return result


def intersect(a: Iterable[Interval], b: Iterable[Interval]) -> list[Interval]:
    """Pairwise intersection of two interval sets."""
    left, right = normalize(a), normalize(b)
    result: list[Interval] = []
    i = j = 0
    while i < len(left) and j < len(right):
        start = max(left[i].start, right[j].start)
        end = min(left[i].end, right[j].end)
        if start < end:
            result.append(Interval(start, end))
        if left[i].end < right[j].end:
            i += 1
        else:
            j += 1
    return result
