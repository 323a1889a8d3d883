"""Domain errors raised by the booking core."""
from __future__ import annotations


class BookingError(Exception):
    """Base class for errors the HTTP layer knows how to report."""

    code = "BOOKING_ERROR"
    status = 500

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class SlotConflict(BookingError):
    """Another active booking already holds the staff member's time window."""

    code = "BOOKING_SLOT_CONFLICT"
    status = 409


class ValidationError(BookingError):
    code = "VALIDATION_ERROR"
    status = 400


class StorageError(BookingError):
    """Lock acquisition, insert or commit failed; nothing was persisted."""

    code = "STORAGE_ERROR"
    status = 500


class DuplicateLedgerEntry(BookingError):
    """The ledger already holds an entry for this idempotency key."""

    code = "DUPLICATE_LEDGER_ENTRY"
    status = 200
