"""
backend/app/services/events.py

Event emitter: pushes scheduling events to a Redis queue for notification
consumers.

Queue:
- events:p2p: instant delivery (appointment and closure notifications)

Emitted types: appointment_created, appointment_updated,
appointment_status_changed, appointment_rescheduled, appointment_ended,
closure_created, closure_conflict.
"""

import json
import time
import logging

from redis.exceptions import RedisError

from ..redis_client import redis_client

logger = logging.getLogger(__name__)

P2P_QUEUE = "events:p2p"


def emit_event(event_type: str, payload: dict) -> None:
    """
    Emit a p2p event (instant delivery).

    Pushed to Redis list `events:p2p` for the consumer loop. Delivery
    failures are logged, never raised: the state change is already committed.
    """
    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        redis_client.rpush(P2P_QUEUE, json.dumps(event, default=str))
        logger.info(f"Event emitted: {event_type} → {P2P_QUEUE}")
    except RedisError as e:
        logger.error(f"Failed to emit event {event_type}: {e}")


def appointment_payload(appt) -> dict:
    """Common event fields of an appointment."""
    return {
        "appointment_id": appt.id,
        "business_id": appt.business_id,
        "service_id": appt.service_id,
        "staff_id": appt.staff_id,
        "customer_id": appt.customer_id,
        "start_time": appt.start_time.isoformat(),
        "end_time": appt.end_time.isoformat(),
        "status": appt.status,
    }
