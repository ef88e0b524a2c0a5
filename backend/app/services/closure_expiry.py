"""
Closure expiry loop.

Periodically deactivates closures whose last occurrence has ended and
drops their cached open intervals.

Runs as an asyncio task in backend lifespan.
"""

import asyncio
import logging

from ..config import settings
from ..database import SessionLocal
from ..redis_client import redis_client
from .closures import auto_expire_closures

logger = logging.getLogger(__name__)


async def closure_expiry_loop() -> None:
    logger.info("closure_expiry_loop started")

    try:
        while True:
            try:
                await asyncio.to_thread(_expire_closures)
            except asyncio.CancelledError:
                logger.info("closure_expiry_loop cancelled")
                raise
            except Exception:
                logger.exception("closure_expiry_loop error")

            await asyncio.sleep(settings.checker_interval_seconds)
    except asyncio.CancelledError:
        pass


def _expire_closures() -> None:
    db = SessionLocal()
    try:
        count = auto_expire_closures(db, redis=redis_client)
        if count:
            logger.info(f"closure_expiry_loop: {count} closures expired")
    finally:
        db.close()
