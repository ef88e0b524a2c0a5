from .scheduling import (
    Base,
    metadata,
    Businesses,
    BusinessHoursOverrides,
    BusinessClosures,
    Services,
    Staff,
    Appointments,
)

__all__ = [
    "Base",
    "metadata",
    "Businesses",
    "BusinessHoursOverrides",
    "BusinessClosures",
    "Services",
    "Staff",
    "Appointments",
]
