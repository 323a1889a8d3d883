"""Staff slot locking and conflict detection for booking creation.

A booking may only be written for a staff member while holding that staff
member's slot lock. Inside the lock the caller counts active booking-service
rows overlapping the requested window; a non-zero count aborts the booking.

The lock is held until the caller's transaction commits or rolls back, so a
second request for the same staff member re-checks against committed state
instead of racing the first one to insert.
"""
from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime

from flask import current_app
from sqlalchemy import select, text

from .errors import StorageError, ValidationError
from .extensions import db
from .models import INACTIVE_BOOKING_STATUSES, Booking, BookingService, ensure_utc

# First key of the two-part PostgreSQL advisory lock used for staff slots.
ADVISORY_LOCK_NAMESPACE = 5103


class StaffLockRegistry:
    """Process-wide mutexes keyed by staff id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def lock_for(self, staff_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(staff_id)
            if lock is None:
                lock = self._locks[staff_id] = threading.Lock()
            return lock


registry = StaffLockRegistry()


@contextmanager
def staff_slot_lock(staff_ids: Iterable[int | None], timeout: float | None = None) -> Iterator[list[int]]:
    """Hold the slot locks of every given staff member.

    Locks are taken in ascending staff id order so two multi-staff bookings
    can never deadlock each other. ``None`` ids (unassigned line items) are
    ignored. Raises StorageError when a lock is not obtained within
    ``timeout`` seconds.
    """
    if timeout is None:
        timeout = current_app.config["BOOKING_LOCK_TIMEOUT_SECONDS"]

    ordered = sorted({staff_id for staff_id in staff_ids if staff_id is not None})
    held: list[threading.Lock] = []
    try:
        for staff_id in ordered:
            lock = registry.lock_for(staff_id)
            if not lock.acquire(timeout=timeout):
                current_app.logger.warning(
                    "Timed out after %ss waiting for slot lock of staff %s", timeout, staff_id
                )
                raise StorageError(
                    "Timed out waiting for the staff calendar lock",
                    details={"staff_id": staff_id},
                )
            held.append(lock)
        yield ordered
    finally:
        for lock in reversed(held):
            lock.release()


def _overlapping_services(columns, staff_id: int, start_at: datetime, end_at: datetime):
    # Half-open windows: touching endpoints do not overlap.
    return (
        select(columns)
        .join(Booking, Booking.booking_id == BookingService.booking_id)
        .where(
            BookingService.staff_id == staff_id,
            Booking.status.not_in(INACTIVE_BOOKING_STATUSES),
            BookingService.scheduled_start_at < end_at,
            BookingService.scheduled_end_at > start_at,
        )
    )


def _check_window(start_at: datetime, end_at: datetime) -> tuple[datetime, datetime]:
    start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
    if end_at <= start_at:
        raise ValidationError(
            "end_at must be after start_at",
            details={"start_at": start_at.isoformat(), "end_at": end_at.isoformat()},
        )
    return start_at, end_at


def find_conflicts(staff_id: int | None, start_at: datetime, end_at: datetime) -> list[BookingService]:
    """Return active line items of ``staff_id`` overlapping the window, without locking."""
    if staff_id is None:
        return []
    start_at, end_at = _check_window(start_at, end_at)
    stmt = _overlapping_services(BookingService, staff_id, start_at, end_at).order_by(BookingService.scheduled_start_at)
    return list(db.session.execute(stmt).scalars().all())


def _acquire_advisory_lock(staff_id: int) -> None:
    # Serialises writers in other processes even when there are no rows to lock yet.
    # Re-acquiring a lock this transaction already holds returns immediately.
    if db.session.get_bind().dialect.name != "postgresql":
        return
    db.session.execute(
        text("SELECT pg_advisory_xact_lock(:namespace, :staff_id)"),
        {"namespace": ADVISORY_LOCK_NAMESPACE, "staff_id": staff_id},
    )


def acquire_advisory_locks(staff_ids: Iterable[int | None]) -> list[int]:
    """Take the transaction-scoped advisory lock of every staff member.

    Locks are taken in ascending staff id order, matching
    :func:`staff_slot_lock`, so writers in different processes queue
    instead of deadlocking. Returns the ordered ids.
    """
    ordered = sorted({staff_id for staff_id in staff_ids if staff_id is not None})
    for staff_id in ordered:
        _acquire_advisory_lock(staff_id)
    return ordered


def lock_conflicting_services(staff_id: int | None, start_at: datetime, end_at: datetime) -> int:
    """Lock and count active line items of ``staff_id`` overlapping the window.

    Must run inside the transaction that will insert the booking, while the
    caller holds :func:`staff_slot_lock` for ``staff_id``. Returns 0 without
    touching the database when no staff member is assigned.
    """
    if staff_id is None:
        return 0
    start_at, end_at = _check_window(start_at, end_at)

    _acquire_advisory_lock(staff_id)
    stmt = (
        _overlapping_services(BookingService.booking_service_id, staff_id, start_at, end_at)
        .with_for_update(of=BookingService.__table__)
    )
    conflicting = db.session.execute(stmt).scalars().all()
    if conflicting:
        current_app.logger.info(
            "Staff %s has %d conflicting booking services between %s and %s",
            staff_id,
            len(conflicting),
            start_at.isoformat(),
            end_at.isoformat(),
        )
    return len(conflicting)
