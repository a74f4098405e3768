"""Tests for table reservations."""

import re
from datetime import datetime, timedelta, timezone

import pytest

import reservations
from errors import ConflictError, InvalidRequestError, InvalidStateError, NotFoundError


def _tomorrow():
    day = datetime.now(timezone.utc).date() + timedelta(days=1)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def _book(storage, **overrides):
    fields = {
        "guest_name": "Aiko Tanaka",
        "guest_email": "Aiko@Example.com",
        "guest_phone": "+880 1700 000000",
        "date": _tomorrow(),
        "time": "19:00",
        "party_size": 4,
    }
    fields.update(overrides)
    return reservations.create_reservation(storage, **fields)


class TestCreate:
    def test_confirmation_code_format(self, storage):
        reservation = _book(storage)
        assert re.fullmatch(r"HSC-[A-HJ-NP-Z2-9]{6}", reservation.confirmation_code)
        assert reservation.status == "pending"
        assert reservation.guest_email == "aiko@example.com"

    def test_past_date_rejected(self, storage):
        with pytest.raises(InvalidRequestError):
            _book(storage, date=datetime.now(timezone.utc) - timedelta(days=1))

    def test_naive_dates_are_treated_as_utc(self, storage):
        reservation = _book(storage, date=_tomorrow().replace(tzinfo=None))
        assert reservation.date.tzinfo is not None

    @pytest.mark.parametrize("slot", ["10:30", "21:30", "19:15", "7pm"])
    def test_invalid_slot(self, storage, slot):
        with pytest.raises(InvalidRequestError):
            _book(storage, time=slot)

    def test_lookup_is_case_insensitive(self, storage):
        reservation = _book(storage)
        found = reservations.lookup(storage, reservation.confirmation_code.lower())
        assert found.id == reservation.id

    def test_lookup_unknown(self, storage):
        with pytest.raises(NotFoundError):
            reservations.lookup(storage, "HSC-AAAAAA")


class TestLifecycle:
    def test_cancel_twice(self, storage):
        reservation = _book(storage)
        cancelled = reservations.cancel_reservation(storage, reservation.id, reason="Flight delayed")
        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "Flight delayed"
        with pytest.raises(InvalidStateError):
            reservations.cancel_reservation(storage, reservation.id)

    def test_seating_flow(self, storage):
        reservation = _book(storage)
        reservations.change_status(storage, reservation.id, "confirmed")
        seated = reservations.change_status(storage, reservation.id, "seated", table_number=7)
        assert seated.table_number == 7
        reservations.change_status(storage, reservation.id, "completed")
        assert reservations.get_reservation(storage, reservation.id).status == "completed"

    def test_invalid_transition(self, storage):
        reservation = _book(storage)
        with pytest.raises(InvalidStateError):
            reservations.change_status(storage, reservation.id, "completed")

    def test_unknown_status(self, storage):
        reservation = _book(storage)
        with pytest.raises(InvalidRequestError):
            reservations.change_status(storage, reservation.id, "lost")

    def test_update_only_while_modifiable(self, storage):
        reservation = _book(storage)
        updated = reservations.update_reservation(storage, reservation.id, time="20:00", party_size=6)
        assert (updated.time, updated.party_size) == ("20:00", 6)

        reservations.change_status(storage, reservation.id, "confirmed")
        reservations.change_status(storage, reservation.id, "seated")
        with pytest.raises(InvalidStateError):
            reservations.update_reservation(storage, reservation.id, party_size=2)


class TestQueries:
    def test_available_slots(self, storage):
        for _ in range(reservations.MAX_TABLES):
            _book(storage, time="19:00")
        cancelled = _book(storage, time="19:30")
        reservations.cancel_reservation(storage, cancelled.id)
        _book(storage, time="12:00")

        slots = {s["time"]: s for s in reservations.available_slots(storage, _tomorrow().date())}

        assert slots["19:00"] == {"time": "19:00", "available": False, "remaining": 0}
        assert slots["19:30"]["remaining"] == reservations.MAX_TABLES
        assert slots["12:00"]["remaining"] == reservations.MAX_TABLES - 1
        assert list(slots) == reservations.TIME_SLOTS

    def test_other_days_do_not_count(self, storage):
        _book(storage, date=_tomorrow() + timedelta(days=1))
        slots = reservations.available_slots(storage, _tomorrow().date())
        assert all(s["remaining"] == reservations.MAX_TABLES for s in slots)

    def test_upcoming_filter(self, storage):
        active = _book(storage, user_id="u1")
        cancelled = _book(storage, user_id="u1", time="12:00")
        reservations.cancel_reservation(storage, cancelled.id)
        _book(storage, user_id="u2")

        upcoming = reservations.list_user_reservations(storage, "u1", upcoming=True)
        everything = reservations.list_user_reservations(storage, "u1")

        assert [r.id for r in upcoming] == [active.id]
        assert len(everything) == 2


class TestCapacity:
    def test_full_slot_rejects_new_bookings(self, storage):
        for _ in range(reservations.MAX_TABLES):
            _book(storage, time="19:00")
        with pytest.raises(ConflictError):
            _book(storage, time="19:00")
        _book(storage, time="19:30")

    def test_cancelled_bookings_free_a_table(self, storage):
        booked = [_book(storage, time="19:00") for _ in range(reservations.MAX_TABLES)]
        reservations.cancel_reservation(storage, booked[0].id)
        _book(storage, time="19:00")

    def test_moving_into_a_full_slot(self, storage):
        for _ in range(reservations.MAX_TABLES):
            _book(storage, time="19:00")
        earlier = _book(storage, time="18:00")
        with pytest.raises(ConflictError):
            reservations.update_reservation(storage, earlier.id, time="19:00")
        assert reservations.get_reservation(storage, earlier.id).time == "18:00"

    def test_rescheduling_within_own_slot(self, storage):
        booked = [_book(storage, time="19:00") for _ in range(reservations.MAX_TABLES)]
        updated = reservations.update_reservation(storage, booked[0].id, time="19:00", party_size=2)
        assert updated.party_size == 2
