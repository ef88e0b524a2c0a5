"""Tests for the booking transactor."""
import threading
from datetime import date, datetime

import pytest
from pydantic import ValidationError

from app.errors import BusinessClosed, InvalidStateTransition, NotFound, SlotConflict
from app.models import Appointments
from app.schemas.appointments import AppointmentUpdate
from app.services.booking import book, update_appointment
from app.services.lifecycle import cancel

from conftest import NOW, emitted_types

MONDAY = date(2030, 1, 7)
SATURDAY = date(2030, 1, 12)


class TestBook:

    def test_creates_pending_appointment(self, db, business, service, events_redis):
        appt = book(db, business.id, service.id, customer_id=7, target_date=MONDAY, start_time="10:00", now=NOW)

        assert appt.status == "PENDING"
        assert appt.start_time == datetime(2030, 1, 7, 10, 0)
        assert appt.end_time == datetime(2030, 1, 7, 10, 30)
        assert appt.price == service.price
        assert emitted_types(events_redis) == ["appointment_created"]

    def test_auto_confirm_business(self, db, make_business, make_service):
        business = make_business(auto_confirm=1)
        service = make_service(business)
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        assert appt.status == "CONFIRMED"
        assert appt.confirmed_at is not None

    def test_closed_day(self, db, business, service):
        with pytest.raises(BusinessClosed):
            book(db, business.id, service.id, 7, SATURDAY, "10:00", now=NOW)

    def test_outside_hours(self, db, business, service):
        with pytest.raises(BusinessClosed):
            book(db, business.id, service.id, 7, MONDAY, "17:45", now=NOW)

    def test_taken_slot(self, db, business, service):
        book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        with pytest.raises(SlotConflict):
            book(db, business.id, service.id, 8, MONDAY, "10:00", now=NOW)
        assert db.query(Appointments).count() == 1

    def test_canceled_appointment_frees_slot(self, db, business, service):
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        cancel(db, appt.id, reason="Customer request")
        assert book(db, business.id, service.id, 8, MONDAY, "10:00", now=NOW).id != appt.id

    def test_off_grid_start(self, db, business, service):
        with pytest.raises(SlotConflict):
            book(db, business.id, service.id, 7, MONDAY, "10:15", now=NOW)

    def test_past_start(self, db, business, service):
        with pytest.raises(SlotConflict):
            book(db, business.id, service.id, 7, MONDAY, "10:00", now=datetime(2030, 1, 7, 11, 0))

    def test_service_buffer_blocks_following_slot(self, db, business, make_service):
        with_buffer = make_service(business, duration_min=30, break_min=30)
        book(db, business.id, with_buffer.id, 7, MONDAY, "10:00", now=NOW)
        with pytest.raises(SlotConflict):
            book(db, business.id, with_buffer.id, 8, MONDAY, "10:30", now=NOW)
        book(db, business.id, with_buffer.id, 8, MONDAY, "11:00", now=NOW)

    def test_staff_bookings_are_independent(self, db, business, service, make_staff):
        alice = make_staff(business)
        bob = make_staff(business)
        book(db, business.id, service.id, 7, MONDAY, "10:00", staff_id=alice.id, now=NOW)
        book(db, business.id, service.id, 8, MONDAY, "10:00", staff_id=bob.id, now=NOW)
        with pytest.raises(SlotConflict):
            book(db, business.id, service.id, 9, MONDAY, "10:00", now=NOW)

    def test_inactive_staff(self, db, business, service, make_staff):
        staff = make_staff(business, is_active=0)
        with pytest.raises(SlotConflict):
            book(db, business.id, service.id, 7, MONDAY, "10:00", staff_id=staff.id, now=NOW)

    def test_unknown_entities(self, db, business, service):
        with pytest.raises(NotFound):
            book(db, 999, service.id, 7, MONDAY, "10:00", now=NOW)
        with pytest.raises(NotFound):
            book(db, business.id, 999, 7, MONDAY, "10:00", now=NOW)
        with pytest.raises(NotFound):
            book(db, business.id, service.id, 7, MONDAY, "10:00", staff_id=999, now=NOW)


class TestConcurrentBooking:

    def _race(self, session_factory, business_id, service_id, staff_id=None, attempts=5):
        barrier = threading.Barrier(attempts)
        results = []
        lock = threading.Lock()

        def worker(customer_id):
            session = session_factory()
            try:
                barrier.wait()
                appt = book(
                    session, business_id, service_id, customer_id, MONDAY, "10:00",
                    staff_id=staff_id, now=NOW,
                )
                outcome = ("ok", appt.id)
            except SlotConflict as e:
                outcome = ("conflict", e.message)
            finally:
                session.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_exactly_one_booking_wins(self, db, session_factory, business, service):
        business_id, service_id = business.id, service.id
        db.rollback()

        results = self._race(session_factory, business_id, service_id)

        assert sum(1 for kind, _ in results if kind == "ok") == 1
        assert sum(1 for kind, _ in results if kind == "conflict") == 4
        assert db.query(Appointments).count() == 1

    def test_same_staff_same_slot(self, db, session_factory, business, service, make_staff):
        staff = make_staff(business)
        business_id, service_id, staff_id = business.id, service.id, staff.id
        db.rollback()

        results = self._race(session_factory, business_id, service_id, staff_id=staff_id, attempts=2)

        assert sorted(kind for kind, _ in results) == ["conflict", "ok"]
        assert db.query(Appointments).filter(Appointments.staff_id == staff_id).count() == 1


class TestUpdateAppointment:

    def test_move_to_free_slot(self, db, business, service, events_redis):
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        moved = update_appointment(db, appt.id, AppointmentUpdate(start_time="11:00"), now=NOW)
        assert moved.start_time == datetime(2030, 1, 7, 11, 0)
        assert moved.end_time == datetime(2030, 1, 7, 11, 30)
        assert emitted_types(events_redis)[-1] == "appointment_rescheduled"

    def test_move_within_own_slot_does_not_conflict_with_itself(self, db, business, make_service):
        hour = make_service(business, duration_min=60)
        appt = book(db, business.id, hour.id, 7, MONDAY, "10:00", now=NOW)
        moved = update_appointment(db, appt.id, AppointmentUpdate(start_time="10:30"), now=NOW)
        assert moved.start_time == datetime(2030, 1, 7, 10, 30)

    def test_move_to_taken_slot(self, db, business, service):
        first = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        second = book(db, business.id, service.id, 8, MONDAY, "11:00", now=NOW)
        with pytest.raises(SlotConflict):
            update_appointment(db, second.id, AppointmentUpdate(start_time="10:00"), now=NOW)
        db.refresh(second)
        assert second.start_time == datetime(2030, 1, 7, 11, 0)
        assert first.status == "PENDING"

    def test_move_to_closed_day(self, db, business, service):
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        with pytest.raises(BusinessClosed):
            update_appointment(db, appt.id, AppointmentUpdate(date=SATURDAY), now=NOW)

    def test_notes_only_skip_validation(self, db, business, service, events_redis):
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        # Validation would fail: the slot is in the past by now
        updated = update_appointment(
            db, appt.id, AppointmentUpdate(internal_notes="VIP", price=80), now=datetime(2030, 2, 1, 9, 0)
        )
        assert updated.internal_notes == "VIP"
        assert updated.price == 80
        assert emitted_types(events_redis)[-1] == "appointment_updated"

    def test_canceled_appointment_cannot_move(self, db, business, service):
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        cancel(db, appt.id, reason="Sick")
        with pytest.raises(InvalidStateTransition):
            update_appointment(db, appt.id, AppointmentUpdate(start_time="11:00"), now=NOW)

    def test_notes_only_keeps_schedule(self, db, business, service):
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", now=NOW)
        updated = update_appointment(db, appt.id, AppointmentUpdate(internal_notes="VIP"))
        assert updated.start_time == datetime(2030, 1, 7, 10, 0)
        assert updated.date == MONDAY
        assert updated.price == service.price

    def test_unassign_staff(self, db, business, service, make_staff):
        staff = make_staff(business)
        appt = book(db, business.id, service.id, 7, MONDAY, "10:00", staff_id=staff.id, now=NOW)
        updated = update_appointment(db, appt.id, AppointmentUpdate(staff_id=None), now=NOW)
        assert updated.staff_id is None

    def test_unknown_field(self):
        with pytest.raises(ValidationError):
            AppointmentUpdate(status="COMPLETED")
