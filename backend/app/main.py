import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .database import SessionLocal, init_db
from .redis_client import redis_client
from .services.closure_expiry import closure_expiry_loop
from .services.completion_checker import completion_checker_loop

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    tasks = [
        asyncio.create_task(completion_checker_loop()),
        asyncio.create_task(closure_expiry_loop()),
    ]
    logger.info("Background loops started")
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background loops stopped")


app = FastAPI(title="Scheduling Core", lifespan=lifespan)


@app.get("/health")
def health():
    try:
        redis_ok = bool(redis_client.ping())
    except RedisError:
        logger.exception("Redis health check failed")
        redis_ok = False

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        db_ok = False
    finally:
        db.close()

    return {"redis": redis_ok, "database": db_ok}
