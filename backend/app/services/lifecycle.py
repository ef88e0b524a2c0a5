# backend/app/services/lifecycle.py
"""
Appointment lifecycle.

    PENDING ──► CONFIRMED ──► COMPLETED
       │            │
       │            └───────► NO_SHOW
       └──────┬─────┘
              ▼
          CANCELED

COMPLETED, CANCELED and NO_SHOW are terminal.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ..database import write_transaction
from ..errors import BatchTransitionError, InvalidStateTransition, NotFound
from ..models import Appointments
from .events import appointment_payload, emit_event
from .slots.config import LifecyclePolicy, get_booking_config, get_lifecycle_policy
from .slots.generator import business_now

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
MAX_NOTES_LENGTH = 1000


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    NO_SHOW = "NO_SHOW"


ACTIVE_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)
TERMINAL_STATUSES = (
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.CANCELED.value,
    AppointmentStatus.NO_SHOW.value,
)

TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELED},
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.CANCELED,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELED: set(),
    AppointmentStatus.NO_SHOW: set(),
}


def can_transition(current: str, target: str) -> bool:
    return AppointmentStatus(target) in TRANSITIONS[AppointmentStatus(current)]


def transition_status(
    db: Session,
    appointment_id: int,
    target: AppointmentStatus | str,
    reason: Optional[str] = None,
    internal_notes: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: LifecyclePolicy | None = None,
) -> Appointments:
    """
    Move one appointment to target status and commit.

    Raises:
        NotFound: unknown appointment
        InvalidStateTransition: edge not allowed, missing reason, or
            temporal policy not satisfied
    """
    target = AppointmentStatus(target)
    with write_transaction(db):
        appt = db.get(Appointments, appointment_id)
        if not appt:
            raise NotFound("Appointment", appointment_id)

        previous = appt.status
        _apply_transition(appt, target, reason, internal_notes, now, policy or get_lifecycle_policy())
        db.commit()

    db.refresh(appt)
    logger.info(f"Appointment {appt.id}: {previous} → {appt.status}")
    emit_event("appointment_status_changed", {
        **appointment_payload(appt),
        "previous_status": previous,
        "reason": reason,
    })
    return appt


def confirm(db: Session, appointment_id: int, **kwargs) -> Appointments:
    return transition_status(db, appointment_id, AppointmentStatus.CONFIRMED, **kwargs)


def cancel(db: Session, appointment_id: int, reason: str, **kwargs) -> Appointments:
    return transition_status(db, appointment_id, AppointmentStatus.CANCELED, reason=reason, **kwargs)


def complete(db: Session, appointment_id: int, internal_notes: Optional[str] = None, **kwargs) -> Appointments:
    return transition_status(
        db, appointment_id, AppointmentStatus.COMPLETED, internal_notes=internal_notes, **kwargs
    )


def mark_no_show(db: Session, appointment_id: int, **kwargs) -> Appointments:
    return transition_status(db, appointment_id, AppointmentStatus.NO_SHOW, **kwargs)


# ── Batch ────────────────────────────────────────────────────────────────


def batch_transition(
    db: Session,
    appointment_ids: Iterable,
    target: AppointmentStatus | str,
    accessible_business_ids: Iterable[int],
    reason: Optional[str] = None,
    internal_notes: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: LifecyclePolicy | None = None,
) -> list[Appointments]:
    """
    Apply one transition to up to max_batch_size appointments, all or nothing.

    Every id is validated first; if any fails, nothing is written and
    BatchTransitionError carries {id: reason} for each failed id.
    """
    target = AppointmentStatus(target)
    policy = policy or get_lifecycle_policy()
    ids = list(appointment_ids)
    max_size = get_booking_config().max_batch_size
    if not ids:
        raise ValueError("At least one appointment id is required")
    if len(ids) > max_size:
        raise ValueError(f"At most {max_size} appointments per batch")

    allowed = set(accessible_business_ids)
    failures: dict = {}
    appointments: list[Appointments] = []
    previous: dict[int, str] = {}

    with write_transaction(db):
        for raw_id in ids:
            appointment_id = _parse_id(raw_id)
            if appointment_id is None:
                failures[raw_id] = "invalid id format"
                continue
            if appointment_id in previous:
                continue

            appt = db.get(Appointments, appointment_id)
            if not appt:
                failures[raw_id] = "not found"
                continue
            if appt.business_id not in allowed:
                failures[raw_id] = "access denied"
                continue

            try:
                previous[appt.id] = appt.status
                _apply_transition(appt, target, reason, internal_notes, now, policy)
            except InvalidStateTransition as e:
                failures[raw_id] = e.message
                continue
            appointments.append(appt)

        if failures:
            logger.warning(f"Batch {target.value} rejected: {len(failures)} of {len(ids)} failed")
            raise BatchTransitionError(failures)
        db.commit()

    for appt in appointments:
        db.refresh(appt)
        emit_event("appointment_status_changed", {
            **appointment_payload(appt),
            "previous_status": previous[appt.id],
            "reason": reason,
        })

    logger.info(f"Batch {target.value} applied to {len(appointments)} appointments")
    return appointments


# ── Internals ────────────────────────────────────────────────────────────


def _parse_id(raw) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
        return value if value > 0 else None
    return None


def _apply_transition(
    appt: Appointments,
    target: AppointmentStatus,
    reason: Optional[str],
    internal_notes: Optional[str],
    now: Optional[datetime],
    policy: LifecyclePolicy,
) -> None:
    """Validate and mutate in memory (no commit)."""
    current = appt.status
    if not can_transition(current, target.value):
        raise InvalidStateTransition(current, target.value)

    stamp = datetime.utcnow()

    if target == AppointmentStatus.CONFIRMED:
        appt.confirmed_at = stamp

    elif target == AppointmentStatus.CANCELED:
        reason = (reason or "").strip()
        if not reason:
            raise InvalidStateTransition(current, target.value, "a cancellation reason is required")
        if len(reason) > MAX_REASON_LENGTH:
            raise InvalidStateTransition(
                current, target.value, f"reason exceeds {MAX_REASON_LENGTH} characters"
            )
        appt.canceled_at = stamp
        appt.cancel_reason = reason

    elif target == AppointmentStatus.COMPLETED:
        if internal_notes is not None and len(internal_notes) > MAX_NOTES_LENGTH:
            raise InvalidStateTransition(
                current, target.value, f"notes exceed {MAX_NOTES_LENGTH} characters"
            )
        if policy.require_end_passed_for_completion:
            if appt.end_time > business_now(appt.business, now):
                raise InvalidStateTransition(current, target.value, "appointment has not ended yet")
        appt.completed_at = stamp
        if internal_notes is not None:
            appt.internal_notes = internal_notes

    elif target == AppointmentStatus.NO_SHOW:
        if policy.require_start_passed_for_no_show:
            if appt.start_time > business_now(appt.business, now):
                raise InvalidStateTransition(current, target.value, "appointment has not started yet")

    appt.status = target.value
