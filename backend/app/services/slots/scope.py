# backend/app/services/slots/scope.py
"""
Booking scope: the unit against which overlaps are checked.

    Scope = BusinessWide | StaffScoped(staff_id)
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class BusinessWide:
    @property
    def cache_key(self) -> str:
        return "all"


@dataclass(frozen=True)
class StaffScoped:
    staff_id: int

    @property
    def cache_key(self) -> str:
        return f"staff{self.staff_id}"


Scope = Union[BusinessWide, StaffScoped]


def scope_for(staff_id: Optional[int]) -> Scope:
    """Build scope from an optional staff id."""
    if staff_id is None:
        return BusinessWide()
    return StaffScoped(staff_id)
