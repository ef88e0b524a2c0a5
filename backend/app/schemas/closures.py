# backend/app/schemas/closures.py

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


PreferredTime = Literal["MORNING", "AFTERNOON", "EVENING", "ANY"]


class RecurringPattern(BaseModel):
    frequency: Literal["WEEKLY", "MONTHLY", "YEARLY"]
    interval: int = Field(1, ge=1)
    endDate: Optional[date] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def upper_frequency(cls, v):
        return v.upper() if isinstance(v, str) else v


class ReschedulePolicy(BaseModel):
    """How impacted appointments are moved off a closure."""
    max_reschedule_days: int = Field(7, ge=1, le=30)
    preferred_time: PreferredTime = "ANY"
    allow_weekends: bool = True
    auto_apply: bool = True

    @field_validator("preferred_time", mode="before")
    @classmethod
    def upper_preferred_time(cls, v):
        return v.upper() if isinstance(v, str) else v
