"""Tests for closure management, impact preview and auto-reschedule."""
import json
from datetime import date, datetime, time
from unittest.mock import MagicMock

import pytest

from app.errors import ClosureConflict, NotFound
from app.models import Appointments, BusinessClosures
from app.schemas.closures import ReschedulePolicy
from app.services.booking import book
from app.services.closures import (
    RescheduleFailure,
    RescheduleSuggestion,
    auto_expire_closures,
    auto_reschedule,
    create_closure,
    create_emergency_closure,
    create_maintenance_closure,
    end_closure_early,
    extend_closure,
    preview_impact,
    suggest_reschedule_slots,
    time_bucket,
)
from app.services.slots import get_available_slots

from conftest import NOW, emitted_types

MONDAY = date(2030, 1, 7)
NEXT_MONDAY = date(2030, 1, 14)
MONDAYS_ONLY = {"mon": [["10:00", "16:00"]]}


class TestCreateClosure:

    def test_emits_created_and_conflict_facts(self, db, business, service, events_redis):
        book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        book(db, business.id, service.id, 8, MONDAY, "15:00", now=NOW)

        closure = create_closure(
            db, business.id, MONDAY, MONDAY, time(9), time(12), reason="Plumbing", now=NOW
        )

        assert closure.is_active == 1
        types = emitted_types(events_redis)
        assert types[-2:] == ["closure_created", "closure_conflict"]

    def test_created_event_keeps_its_type(self, db, business, events_redis):
        closure = create_closure(
            db, business.id, MONDAY, MONDAY, time(9), time(12), closure_type="VACATION", now=NOW
        )
        event = json.loads(events_redis.rpush.call_args.args[1])
        assert event["type"] == "closure_created"
        assert event["closure_type"] == "VACATION"
        assert event["closure_id"] == closure.id

    def test_zero_interval_pattern_rejected(self, db, business):
        with pytest.raises(ValueError):
            create_closure(
                db, business.id, MONDAY, MONDAY,
                recurring_pattern={"frequency": "WEEKLY", "interval": 0}, now=NOW,
            )
        assert db.query(BusinessClosures).count() == 0

    def test_blocks_slots(self, db, business, service):
        create_closure(db, business.id, MONDAY, MONDAY, time(12), time(14), now=NOW)
        slots = get_available_slots(db, business.id, service.id, MONDAY, now=NOW)
        assert "12:00" not in slots and "13:30" not in slots
        assert "11:30" in slots and "14:00" in slots

    def test_overlapping_closure_rejected(self, db, business):
        first = create_closure(db, business.id, MONDAY, date(2030, 1, 9), now=NOW)
        with pytest.raises(ClosureConflict) as exc:
            create_closure(db, business.id, date(2030, 1, 9), date(2030, 1, 10), now=NOW)
        assert exc.value.conflicting_ids == [first.id]

    def test_adjacent_closures_allowed(self, db, business):
        create_closure(db, business.id, MONDAY, MONDAY, time(9), time(12), now=NOW)
        create_closure(db, business.id, MONDAY, MONDAY, time(12), time(14), now=NOW)
        assert db.query(BusinessClosures).count() == 2

    def test_past_start_rejected(self, db, business):
        with pytest.raises(ValueError):
            create_closure(db, business.id, date(2029, 12, 30), date(2029, 12, 31), now=NOW)

    def test_start_within_buffer_allowed(self, db, business):
        closure = create_closure(
            db, business.id, date(2030, 1, 1), date(2030, 1, 1), time(7, 57), time(9), now=NOW
        )
        assert closure.id is not None

    def test_end_before_start_rejected(self, db, business):
        with pytest.raises(ValueError):
            create_closure(db, business.id, MONDAY, MONDAY, time(14), time(12), now=NOW)

    def test_cache_invalidated_for_closure_days(self, db, business):
        redis = MagicMock()
        redis.keys.return_value = []
        create_closure(db, business.id, MONDAY, date(2030, 1, 8), now=NOW, redis=redis)
        patterns = [call.args[0] for call in redis.keys.call_args_list]
        assert patterns == [
            f"slots:open:{business.id}:*:2030-01-07",
            f"slots:open:{business.id}:*:2030-01-08",
        ]


class TestClosureLifecycle:

    def test_extend(self, db, business):
        closure = create_closure(db, business.id, MONDAY, MONDAY, time(9), time(12), now=NOW)
        extended = extend_closure(db, closure.id, datetime(2030, 1, 8, 12, 0))
        assert extended.end_date == date(2030, 1, 8)
        assert extended.end_time == time(12)

    def test_extend_into_other_closure(self, db, business):
        closure = create_closure(db, business.id, MONDAY, MONDAY, now=NOW)
        create_closure(db, business.id, date(2030, 1, 9), date(2030, 1, 9), now=NOW)
        with pytest.raises(ClosureConflict):
            extend_closure(db, closure.id, datetime(2030, 1, 10, 0, 0))
        db.refresh(closure)
        assert closure.end_date == MONDAY

    def test_end_early_deactivates(self, db, business, service):
        closure = create_closure(db, business.id, MONDAY, date(2030, 1, 9), now=NOW)
        ended = end_closure_early(db, closure.id, end_at=datetime(2030, 1, 8, 0, 0))
        assert ended.is_active == 0
        assert ended.end_date == MONDAY
        assert get_available_slots(db, business.id, service.id, date(2030, 1, 8), now=NOW) != []

    def test_auto_expire(self, db, business):
        past = create_closure(db, business.id, date(2030, 1, 1), date(2030, 1, 1), time(8), time(12), now=NOW)
        future = create_closure(db, business.id, MONDAY, MONDAY, now=NOW)

        assert auto_expire_closures(db, now=datetime(2030, 1, 3, 9, 0)) == 1
        assert db.get(BusinessClosures, past.id).is_active == 0
        assert db.get(BusinessClosures, future.id).is_active == 1

    def test_recurring_closure_expires_after_last_occurrence(self, db, business):
        create_closure(
            db, business.id, MONDAY, MONDAY, time(12), time(13),
            recurring_pattern={"frequency": "WEEKLY", "interval": 1, "endDate": "2030-01-21"},
            now=NOW,
        )
        assert auto_expire_closures(db, now=datetime(2030, 1, 15, 9, 0)) == 0
        assert auto_expire_closures(db, now=datetime(2030, 1, 22, 9, 0)) == 1

    def test_emergency_closure_runs_to_end_of_day(self, db, business):
        closure = create_emergency_closure(db, business.id, "Power outage", now=datetime(2030, 1, 7, 11, 20, 45))
        assert closure.type == "EMERGENCY"
        assert closure.reason == "Emergency: Power outage"
        assert (closure.start_date, closure.start_time) == (MONDAY, time(11, 20))
        assert (closure.end_date, closure.end_time) == (MONDAY, None)

    def test_maintenance_closure(self, db, business):
        closure = create_maintenance_closure(db, business.id, "HVAC", datetime(2030, 1, 7, 22, 0), estimated_hours=4)
        assert (closure.end_date, closure.end_time) == (date(2030, 1, 8), time(2, 0))
        assert closure.reason == "Maintenance: HVAC"

    def test_unknown_closure(self, db):
        with pytest.raises(NotFound):
            extend_closure(db, 404, datetime(2030, 1, 8))


class TestPreviewImpact:

    def test_intersecting_active_appointments(self, db, business, service, make_service):
        other = make_service(business, duration_min=60)
        a = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        b = book(db, business.id, other.id, 8, MONDAY, "11:00", now=NOW)
        book(db, business.id, service.id, 9, date(2030, 1, 8), "10:00", now=NOW)

        assert [x.id for x in preview_impact(db, business.id, MONDAY, MONDAY)] == [a.id, b.id]
        assert [x.id for x in preview_impact(db, business.id, MONDAY, MONDAY, affected_services=[other.id])] == [b.id]
        assert preview_impact(db, business.id, MONDAY, MONDAY, start_time=time(12)) == []

    def test_is_read_only(self, db, business, service):
        a = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        preview_impact(db, business.id, MONDAY, MONDAY)
        assert db.get(Appointments, a.id).start_time == datetime(2030, 1, 7, 10, 0)


class TestAutoReschedule:

    def test_moves_to_next_open_day(self, db, make_business, make_service):
        business = make_business(hours=MONDAYS_ONLY)
        service = make_service(business, duration_min=60)
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        closure = create_closure(db, business.id, MONDAY, MONDAY, now=NOW)

        results = auto_reschedule(db, closure.id, ReschedulePolicy(max_reschedule_days=7), now=NOW)

        assert results == [RescheduleSuggestion(
            appointment_id=appt.id,
            original_start=datetime(2030, 1, 7, 10, 0),
            new_date=NEXT_MONDAY,
            new_start_time="10:00",
            applied=True,
        )]
        assert db.get(Appointments, appt.id).start_time == datetime(2030, 1, 14, 10, 0)

    def test_failure_when_no_slot_within_bound(self, db, make_business, make_service):
        business = make_business(hours=MONDAYS_ONLY)
        service = make_service(business, duration_min=60)
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        closure = create_closure(db, business.id, MONDAY, date(2030, 1, 20), now=NOW)

        results = auto_reschedule(db, closure.id, ReschedulePolicy(max_reschedule_days=7), now=NOW)

        assert len(results) == 1
        assert isinstance(results[0], RescheduleFailure)
        assert results[0].appointment_id == appt.id
        refreshed = db.get(Appointments, appt.id)
        assert refreshed.start_time == datetime(2030, 1, 7, 10, 0)
        assert refreshed.status == "PENDING"

    def test_preferred_bucket_and_weekends(self, db, business, service):
        appt = book(db, business.id, service.id, 7, date(2030, 1, 11), "10:00", now=NOW)
        closure = create_closure(db, business.id, date(2030, 1, 11), date(2030, 1, 11), now=NOW)
        policy = ReschedulePolicy(
            max_reschedule_days=5, preferred_time="afternoon", allow_weekends=False, auto_apply=False
        )

        [result] = auto_reschedule(db, closure.id, policy, now=NOW)

        assert result.new_date == NEXT_MONDAY
        assert result.new_start_time == "12:00"
        assert result.applied is False
        assert db.get(Appointments, appt.id).date == date(2030, 1, 11)

    def test_service_restricted_closure_only_moves_that_service(self, db, business, service, make_service):
        other = make_service(business, duration_min=60)
        moved = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        kept = book(db, business.id, other.id, 8, MONDAY, "11:00", now=NOW)
        closure = create_closure(db, business.id, MONDAY, MONDAY, affected_services=[service.id], now=NOW)

        results = auto_reschedule(db, closure.id, now=NOW)

        assert [r.appointment_id for r in results] == [moved.id]
        assert db.get(Appointments, kept.id).date == MONDAY

    def test_policy_bounds(self):
        with pytest.raises(ValueError):
            ReschedulePolicy(max_reschedule_days=0)
        with pytest.raises(ValueError):
            ReschedulePolicy(max_reschedule_days=31)


class TestSuggestions:

    def test_three_per_day_in_original_bucket(self, db, business, service):
        appt = book(db, business.id, service.id, 7, MONDAY, "15:00", now=NOW)
        suggestions = suggest_reschedule_slots(db, appt.id, max_suggestions=5, now=NOW)
        assert suggestions == [
            {"date": date(2030, 1, 8), "start_time": "12:00"},
            {"date": date(2030, 1, 8), "start_time": "12:30"},
            {"date": date(2030, 1, 8), "start_time": "13:00"},
            {"date": date(2030, 1, 9), "start_time": "12:00"},
            {"date": date(2030, 1, 9), "start_time": "12:30"},
        ]

    def test_time_buckets(self):
        assert time_bucket(11 * 60 + 59) == "MORNING"
        assert time_bucket(12 * 60) == "AFTERNOON"
        assert time_bucket(17 * 60) == "EVENING"
