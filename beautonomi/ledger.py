"""Loyalty ledger writes guarded by an idempotency key.

Every entry is keyed by (user, reference id, reference type, transaction
type). The database's unique constraint on that key is the only concurrency
control: duplicate webhook deliveries, retried jobs or concurrent workers
that post the same credit fail at insert time, and ``credit_once`` turns
that failure into a no-op.
"""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import DuplicateLedgerEntry, StorageError, ValidationError
from .extensions import db
from .models import LEDGER_TRANSACTION_TYPES, Booking, LoyaltyPointTransaction

BOOKING_REFERENCE = "booking"


def find_ledger_entry(
    user_id: int,
    reference_id: str,
    reference_type: str,
    transaction_type: str,
) -> LoyaltyPointTransaction | None:
    stmt = select(LoyaltyPointTransaction).where(
        LoyaltyPointTransaction.user_id == user_id,
        LoyaltyPointTransaction.reference_id == str(reference_id),
        LoyaltyPointTransaction.reference_type == reference_type,
        LoyaltyPointTransaction.transaction_type == transaction_type,
    )
    return db.session.execute(stmt).scalars().first()


def post_ledger_entry(
    user_id: int,
    points: int,
    transaction_type: str,
    reference_id: str | None = None,
    reference_type: str | None = None,
    description: str | None = None,
    expires_at: datetime | None = None,
) -> LoyaltyPointTransaction:
    """Insert and commit one ledger entry.

    Raises DuplicateLedgerEntry when an entry with the same idempotency key
    already exists, StorageError for any other database failure.
    """
    if transaction_type not in LEDGER_TRANSACTION_TYPES:
        raise ValidationError(
            f"transaction_type must be one of: {', '.join(LEDGER_TRANSACTION_TYPES)}",
            details={"transaction_type": transaction_type},
        )
    if isinstance(points, bool) or not isinstance(points, int) or points == 0:
        raise ValidationError("points must be a non-zero integer", details={"points": points})
    if reference_id is not None:
        reference_id = str(reference_id)

    entry = LoyaltyPointTransaction(
        user_id=user_id,
        transaction_type=transaction_type,
        points=points,
        description=description,
        reference_id=reference_id,
        reference_type=reference_type,
        expires_at=expires_at,
    )
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        key = {
            "user_id": user_id,
            "reference_id": reference_id,
            "reference_type": reference_type,
            "transaction_type": transaction_type,
        }
        if reference_id is not None and find_ledger_entry(user_id, reference_id, reference_type, transaction_type):
            current_app.logger.warning(
                "Duplicate ledger entry for %s %s (%s) of user %s",
                reference_type,
                reference_id,
                transaction_type,
                user_id,
            )
            raise DuplicateLedgerEntry("Ledger entry already applied", details=key) from exc
        current_app.logger.exception("IntegrityError but no existing ledger entry found", exc_info=exc)
        raise StorageError("Failed to record ledger entry", details=key) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record ledger entry", exc_info=exc)
        raise StorageError("Failed to record ledger entry") from exc
    return entry


def credit_once(
    user_id: int,
    reference_id: str,
    reference_type: str,
    transaction_type: str,
    points: int,
    description: str | None = None,
    expires_at: datetime | None = None,
) -> tuple[LoyaltyPointTransaction, bool]:
    """Post a ledger entry at most once per idempotency key.

    Returns ``(entry, True)`` when this call wrote the entry and
    ``(existing_entry, False)`` when it had already been applied.
    """
    try:
        entry = post_ledger_entry(
            user_id=user_id,
            points=points,
            transaction_type=transaction_type,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description,
            expires_at=expires_at,
        )
    except DuplicateLedgerEntry:
        existing = find_ledger_entry(user_id, reference_id, reference_type, transaction_type)
        return existing, False
    return entry, True


def calculate_loyalty_points(amount: Decimal) -> int:
    rate = Decimal(str(current_app.config["LOYALTY_POINTS_PER_CURRENCY_UNIT"]))
    points = (Decimal(amount) * rate).to_integral_value(rounding=ROUND_FLOOR)
    return max(int(points), 0)


def award_points_for_booking(booking: Booking) -> tuple[LoyaltyPointTransaction, bool] | None:
    """Credit the customer for a completed booking, once.

    Returns None when the booking earns no points.
    """
    points = calculate_loyalty_points(booking.subtotal or Decimal("0"))
    if points <= 0:
        return None

    booking_id = booking.booking_id
    entry, created = credit_once(
        user_id=booking.customer_id,
        reference_id=str(booking_id),
        reference_type=BOOKING_REFERENCE,
        transaction_type="earned",
        points=points,
        description=f"Points earned for completed booking {booking.booking_number}",
    )
    if created:
        try:
            booking.loyalty_points_earned = points
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Failed to record points earned on booking %s", booking_id, exc_info=exc)
            raise StorageError("Failed to record points earned on booking") from exc
        current_app.logger.info("Awarded %d loyalty points for booking %s", points, booking_id)
    return entry, created


def reverse_points_for_booking(booking: Booking) -> tuple[LoyaltyPointTransaction, bool] | None:
    """Take back points earned by a booking that has been cancelled.

    Returns None when nothing had been earned.
    """
    earned = find_ledger_entry(booking.customer_id, str(booking.booking_id), BOOKING_REFERENCE, "earned")
    if earned is None:
        return None
    result = credit_once(
        user_id=booking.customer_id,
        reference_id=str(booking.booking_id),
        reference_type=BOOKING_REFERENCE,
        transaction_type="redeemed",
        points=-abs(earned.points),
        description=f"Points reversed for cancelled booking {booking.booking_number}",
    )
    if result[1]:
        current_app.logger.info("Reversed %d loyalty points for booking %s", earned.points, booking.booking_id)
    return result


def get_points_balance(user_id: int) -> int:
    stmt = select(func.coalesce(func.sum(LoyaltyPointTransaction.points), 0)).where(
        LoyaltyPointTransaction.user_id == user_id
    )
    return int(db.session.execute(stmt).scalar_one())
