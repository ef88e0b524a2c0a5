# backend/app/errors.py
"""
Scheduling core error taxonomy.

Every error the core raises derives from SchedulingError so callers can map
kinds to their own responses:

- NotFound               → unknown business/service/staff/appointment/closure
- SlotConflict           → slot taken (lost the race) or no longer valid
- BusinessClosed         → no open hours at the requested date/time
- InvalidStateTransition → lifecycle violation
- InvalidBusinessState   → missing timezone / broken hours configuration
- ClosureConflict        → closure overlaps another active closure
- BatchTransitionError   → batch rejected, carries per-id failures

RescheduleFailure is not an exception: it is reported per appointment in
the auto-reschedule result list (see services.closures).
"""


class SchedulingError(Exception):
    """Base class for scheduling core errors."""

    code = "scheduling_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(SchedulingError):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class SlotConflict(SchedulingError):
    code = "slot_conflict"


class BusinessClosed(SchedulingError):
    code = "business_closed"


class InvalidStateTransition(SchedulingError):
    code = "invalid_state_transition"

    def __init__(self, current: str, target: str, detail: str | None = None):
        message = f"Cannot transition from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.current = current
        self.target = target


class InvalidBusinessState(SchedulingError):
    code = "invalid_business_state"


class ClosureConflict(SchedulingError):
    code = "closure_conflict"

    def __init__(self, message: str, conflicting_ids: list[int]):
        super().__init__(message)
        self.conflicting_ids = conflicting_ids


class BatchTransitionError(SchedulingError):
    code = "batch_rejected"

    def __init__(self, failures: dict):
        ids = ", ".join(str(k) for k in failures)
        super().__init__(f"Batch rejected, failed ids: {ids}")
        self.failures = failures
