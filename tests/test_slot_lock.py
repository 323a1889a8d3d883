"""Tests for staff slot locking and overlap detection."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from beautonomi.booking_writer import create_booking_with_locking
from beautonomi.errors import StorageError, ValidationError
from beautonomi.extensions import db
from beautonomi.models import Booking
from beautonomi.slot_lock import (find_conflicts, lock_conflicting_services,
                                  registry, staff_slot_lock)

TEN = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def booked(app, catalog, make_booking_request):
    """One active 10:00-11:00 booking for the catalog stylist."""
    with app.app_context():
        booking_id = create_booking_with_locking(make_booking_request(catalog, TEN))
    return booking_id


def test_overlapping_window_is_counted(app, catalog, booked) -> None:
    with app.app_context():
        count = lock_conflicting_services(catalog["staff_id"], TEN + timedelta(minutes=59), TEN + timedelta(minutes=90))
        db.session.rollback()

    assert count == 1


def test_touching_windows_do_not_conflict(app, catalog, booked) -> None:
    with app.app_context():
        after = lock_conflicting_services(catalog["staff_id"], TEN + timedelta(hours=1), TEN + timedelta(hours=2))
        before = lock_conflicting_services(catalog["staff_id"], TEN - timedelta(hours=1), TEN)
        db.session.rollback()

    assert after == 0
    assert before == 0


def test_other_staff_is_not_affected(app, catalog, booked) -> None:
    with app.app_context():
        count = lock_conflicting_services(catalog["second_staff_id"], TEN, TEN + timedelta(hours=1))
        db.session.rollback()

    assert count == 0


@pytest.mark.parametrize("status", ["cancelled", "no_show"])
def test_inactive_bookings_release_their_slot(app, catalog, booked, status) -> None:
    with app.app_context():
        booking = db.session.get(Booking, booked)
        booking.status = status
        db.session.commit()

        assert lock_conflicting_services(catalog["staff_id"], TEN, TEN + timedelta(hours=1)) == 0
        assert find_conflicts(catalog["staff_id"], TEN, TEN + timedelta(hours=1)) == []


def test_find_conflicts_returns_line_items(app, catalog, booked) -> None:
    with app.app_context():
        conflicts = find_conflicts(catalog["staff_id"], TEN + timedelta(minutes=30), TEN + timedelta(hours=3))

        assert [item.booking_id for item in conflicts] == [booked]


def test_unassigned_staff_skips_the_check(app, catalog, booked) -> None:
    with app.app_context():
        assert lock_conflicting_services(None, TEN, TEN + timedelta(hours=1)) == 0
        assert find_conflicts(None, TEN, TEN + timedelta(hours=1)) == []


def test_end_must_follow_start(app, catalog) -> None:
    with app.app_context():
        with pytest.raises(ValidationError):
            lock_conflicting_services(catalog["staff_id"], TEN, TEN)
        with pytest.raises(ValidationError):
            find_conflicts(catalog["staff_id"], TEN, TEN - timedelta(minutes=1))


def test_naive_datetimes_are_treated_as_utc(app, catalog, booked) -> None:
    with app.app_context():
        count = lock_conflicting_services(catalog["staff_id"], datetime(2024, 1, 1, 10, 30), datetime(2024, 1, 1, 10, 45))
        db.session.rollback()

    assert count == 1


def test_lock_times_out_while_another_writer_holds_it(app, catalog) -> None:
    lock = registry.lock_for(catalog["staff_id"])
    lock.acquire()
    try:
        with app.app_context():
            with pytest.raises(StorageError):
                with staff_slot_lock([catalog["staff_id"]], timeout=0.05):
                    pass
    finally:
        lock.release()


def test_locks_are_released_after_use(app, catalog) -> None:
    with app.app_context():
        with staff_slot_lock([catalog["second_staff_id"], None, catalog["staff_id"]]) as held:
            assert held == sorted([catalog["staff_id"], catalog["second_staff_id"]])
            assert registry.lock_for(catalog["staff_id"]).locked()

    assert not registry.lock_for(catalog["staff_id"]).locked()
    assert not registry.lock_for(catalog["second_staff_id"]).locked()
