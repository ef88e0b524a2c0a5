"""
Appointment completion checker.

Periodically checks for active appointments whose end time has passed
(in the business timezone) and either:
- emits appointment_ended events (default), or
- completes CONFIRMED appointments when settings.auto_complete_enabled.

Runs as an asyncio task in backend lifespan.
Uses synchronous DB and Redis (via asyncio.to_thread).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from ..config import settings
from ..database import SessionLocal
from ..models import Appointments
from ..redis_client import redis_client
from .events import appointment_payload, emit_event
from .lifecycle import ACTIVE_STATUSES, AppointmentStatus, transition_status
from .slots.config import LifecyclePolicy
from .slots.generator import business_now

logger = logging.getLogger(__name__)

SENT_KEY_TTL = 900  # 15 minutes, re-send until staff acts


async def completion_checker_loop() -> None:
    """
    Periodic loop over appointments whose service time has ended.

    For each PENDING/CONFIRMED appointment with end_time <= now:
    - auto-complete (CONFIRMED, when enabled), or
    - emit appointment_ended and mark as sent in Redis to avoid duplicates
    """
    logger.info("completion_checker_loop started")

    try:
        while True:
            try:
                await asyncio.to_thread(check_ended_appointments)
            except asyncio.CancelledError:
                logger.info("completion_checker_loop cancelled")
                raise
            except Exception:
                logger.exception("completion_checker_loop error")

            await asyncio.sleep(settings.checker_interval_seconds)
    except asyncio.CancelledError:
        pass


def check_ended_appointments(db=None, now: Optional[datetime] = None) -> int:
    """Process ended appointments (synchronous). Returns number handled."""
    own_session = db is None
    db = db or SessionLocal()
    handled = 0
    try:
        # Widest local/UTC skew is about a day; exact check is per business below
        horizon = (now or datetime.utcnow()).replace(tzinfo=None) + timedelta(days=1)
        appointments = (
            db.query(Appointments)
            .filter(
                Appointments.status.in_(ACTIVE_STATUSES),
                Appointments.end_time <= horizon,
            )
            .all()
        )

        for appt in appointments:
            try:
                if _process_single_appointment(db, appt, now):
                    handled += 1
            except Exception:
                logger.exception(f"Error processing appointment {appt.id} for completion")
    finally:
        if own_session:
            db.close()
    return handled


def _process_single_appointment(db, appt: Appointments, now: Optional[datetime]) -> bool:
    """Handle one appointment if its service time has ended."""
    if appt.end_time > business_now(appt.business, now):
        return False

    if settings.auto_complete_enabled and appt.status == AppointmentStatus.CONFIRMED.value:
        transition_status(
            db,
            appt.id,
            AppointmentStatus.COMPLETED,
            now=now,
            policy=LifecyclePolicy(require_end_passed_for_completion=True),
        )
        logger.info(f"Appointment {appt.id} auto-completed")
        return True

    sent_key = f"appt:ended:sent:{appt.id}"
    if redis_client.exists(sent_key):
        return False

    emit_event("appointment_ended", appointment_payload(appt))
    redis_client.setex(sent_key, SENT_KEY_TTL, "1")

    logger.info(
        f"appointment_ended emitted for appointment={appt.id} "
        f"(service ended at {appt.end_time.strftime('%H:%M')})"
    )
    return True
