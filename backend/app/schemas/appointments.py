# backend/app/schemas/appointments.py

import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..services.slots.config import time_str_to_minutes


class AppointmentUpdate(BaseModel):
    """Partial appointment changes; only fields that are set are applied."""
    date: Optional[datetime.date] = None
    start_time: Optional[str] = Field(None, description='"HH:MM" business-local')
    staff_id: Optional[int] = None

    customer_notes: Optional[str] = Field(None, max_length=1000)
    internal_notes: Optional[str] = Field(None, max_length=1000)
    price: Optional[float] = Field(None, ge=0)

    model_config = {"extra": "forbid"}

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            time_str_to_minutes(v)
        return v
