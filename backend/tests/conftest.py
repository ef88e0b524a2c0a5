"""Shared test fixtures."""
import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from app.database import create_db_engine, init_db
from app.models import Businesses, Services, Staff

# Tuesday, before every date used in the tests (business-local wall time)
NOW = datetime(2030, 1, 1, 8, 0)

WEEKDAYS_9_TO_18 = {
    day: [["09:00", "18:00"]] for day in ("mon", "tue", "wed", "thu", "fri")
}


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several sessions/threads share one database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'scheduling.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def events_redis(monkeypatch):
    """Capture emitted events instead of talking to Redis."""
    mock = MagicMock()
    monkeypatch.setattr("app.services.events.redis_client", mock)
    return mock


def emitted_types(events_redis) -> list[str]:
    return [json.loads(call.args[1])["type"] for call in events_redis.rpush.call_args_list]


@pytest.fixture
def make_business(db):
    def _create(hours=None, timezone="Europe/Istanbul", auto_confirm=None):
        business = Businesses(
            name="Test Salon",
            timezone=timezone,
            business_hours=json.dumps(WEEKDAYS_9_TO_18 if hours is None else hours),
            auto_confirm=auto_confirm,
        )
        db.add(business)
        db.commit()
        return business
    return _create


@pytest.fixture
def business(make_business):
    return make_business()


@pytest.fixture
def make_service(db):
    def _create(business, duration_min=30, break_min=0, **kwargs):
        service = Services(
            business_id=business.id,
            name=f"Service {duration_min}m",
            duration_min=duration_min,
            break_min=break_min,
            price=100,
            **kwargs,
        )
        db.add(service)
        db.commit()
        return service
    return _create


@pytest.fixture
def service(business, make_service):
    return make_service(business, duration_min=30)


@pytest.fixture
def make_staff(db):
    def _create(business, work_schedule=None, is_active=1):
        staff = Staff(
            business_id=business.id,
            display_name="Staff",
            work_schedule=json.dumps(work_schedule) if work_schedule else None,
            is_active=is_active,
        )
        db.add(staff)
        db.commit()
        return staff
    return _create
