"""Assemble booking requests and create them atomically.

``create_booking_with_locking`` is the single entry point used by both the
customer checkout and the provider walk-in flows. It either commits a booking
header together with every one of its line items, or nothing at all.
"""
from __future__ import annotations

import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .errors import BookingError, SlotConflict, StorageError, ValidationError
from .extensions import db
from .models import Booking, BookingService, ensure_utc, utc_now
from .slot_lock import acquire_advisory_locks, lock_conflicting_services, staff_slot_lock

CREATION_STATUSES = ("pending", "confirmed")
BOOKING_SOURCES = ("online", "walk_in")
LOCATION_TYPES = ("at_salon", "at_home")
MONEY_FIELDS = (
    "subtotal",
    "travel_fee",
    "service_fee_amount",
    "tip_amount",
    "tax_amount",
    "discount_amount",
    "total_amount",
)
ADDRESS_FIELDS = ("line1", "line2", "city", "state", "country", "postal_code")


def parse_datetime(value: object, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be an ISO 8601 datetime", details={"field": field_name})
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise ValidationError(
            f"{field_name} must be an ISO 8601 datetime", details={"field": field_name}
        ) from exc


def parse_decimal(value: object, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name}) from exc
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name})
    return amount


def parse_int(value: object, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", details={"field": field_name})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be an integer", details={"field": field_name}) from exc


def parse_optional_text(value: object, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", details={"field": field_name})
    return value.strip() or None


def _optional_int(value: object, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    return parse_int(value, field_name)


@dataclass
class LineItemRequest:
    offering_id: int
    duration_minutes: int
    price: Decimal
    currency: str
    staff_id: int | None = None
    scheduled_start_at: datetime | None = None
    scheduled_end_at: datetime | None = None
    buffer_minutes: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, object], currency: str) -> "LineItemRequest":
        if not isinstance(payload, dict):
            raise ValidationError("each service must be an object")
        offering_id = payload.get("offering_id")
        if offering_id is None:
            raise ValidationError("offering_id is required for each service", details={"field": "offering_id"})
        if payload.get("duration_minutes") is None or payload.get("price") is None:
            raise ValidationError(
                "duration_minutes and price are required for each service",
                details={"offering_id": offering_id},
            )
        start = payload.get("scheduled_start_at")
        end = payload.get("scheduled_end_at")
        return cls(
            offering_id=parse_int(offering_id, "offering_id"),
            duration_minutes=parse_int(payload["duration_minutes"], "duration_minutes"),
            price=parse_decimal(payload["price"], "price"),
            currency=str(payload.get("currency") or currency).upper(),
            staff_id=_optional_int(payload.get("staff_id"), "staff_id"),
            scheduled_start_at=parse_datetime(start, "scheduled_start_at") if start else None,
            scheduled_end_at=parse_datetime(end, "scheduled_end_at") if end else None,
            buffer_minutes=parse_int(payload.get("buffer_minutes") or 0, "buffer_minutes"),
        )


@dataclass
class BookingRequest:
    customer_id: int
    provider_id: int
    scheduled_at: datetime
    services: list[LineItemRequest]
    subtotal: Decimal
    total_amount: Decimal
    travel_fee: Decimal = Decimal("0")
    service_fee_amount: Decimal = Decimal("0")
    tip_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    currency: str = "ZAR"
    status: str = "pending"
    booking_source: str = "online"
    location_type: str = "at_salon"
    address: dict[str, str | None] = field(default_factory=dict)
    special_requests: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, object], default_currency: str = "ZAR") -> "BookingRequest":
        """Parse a JSON booking payload.

        The payload already carries the caller's totals: ``subtotal`` and
        ``total_amount`` are stored as given, never recomputed here.
        """
        missing = [name for name in ("customer_id", "provider_id", "scheduled_at") if not payload.get(name)]
        if missing:
            raise ValidationError(
                f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required",
                details={"missing": missing},
            )
        services = payload.get("services")
        if not isinstance(services, list) or not services:
            raise ValidationError("at least one service is required", details={"field": "services"})

        currency = str(payload.get("currency") or default_currency).upper()
        money = {}
        for name in MONEY_FIELDS:
            value = payload.get(name)
            if value is None:
                if name in ("subtotal", "total_amount"):
                    raise ValidationError(f"{name} is required", details={"field": name})
                value = 0
            money[name] = parse_decimal(value, name)

        address = payload.get("address") or {}
        if not isinstance(address, dict):
            raise ValidationError("address must be an object", details={"field": "address"})

        return cls(
            customer_id=parse_int(payload["customer_id"], "customer_id"),
            provider_id=parse_int(payload["provider_id"], "provider_id"),
            scheduled_at=parse_datetime(payload["scheduled_at"], "scheduled_at"),
            services=[LineItemRequest.from_payload(item, currency) for item in services],
            currency=currency,
            status=str(payload.get("status") or "pending"),
            booking_source=str(payload.get("booking_source") or "online"),
            location_type=str(payload.get("location_type") or "at_salon"),
            address={key: address.get(key) for key in ADDRESS_FIELDS},
            special_requests=parse_optional_text(payload.get("special_requests"), "special_requests"),
            **money,
        )

    def schedule_line_items(self) -> list[LineItemRequest]:
        """Fill in missing line-item windows.

        Items without an explicit start run back to back from the booking's
        scheduled time, each separated by its own ``buffer_minutes``.
        """
        cursor = self.scheduled_at
        for item in self.services:
            if item.scheduled_start_at is None:
                item.scheduled_start_at = cursor
            if item.scheduled_end_at is None:
                item.scheduled_end_at = item.scheduled_start_at + timedelta(minutes=item.duration_minutes)
            cursor = item.scheduled_end_at + timedelta(minutes=item.buffer_minutes)
        return self.services

    @property
    def scheduled_end_at(self) -> datetime:
        return max(item.scheduled_end_at for item in self.schedule_line_items())

    def validate(self) -> None:
        if self.status not in CREATION_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(CREATION_STATUSES)}",
                details={"status": self.status},
            )
        if self.booking_source not in BOOKING_SOURCES:
            raise ValidationError(
                f"booking_source must be one of: {', '.join(BOOKING_SOURCES)}",
                details={"booking_source": self.booking_source},
            )
        if self.location_type not in LOCATION_TYPES:
            raise ValidationError(
                f"location_type must be one of: {', '.join(LOCATION_TYPES)}",
                details={"location_type": self.location_type},
            )
        if self.location_type == "at_home" and not (self.address.get("line1") and self.address.get("city")):
            raise ValidationError(
                "at-home bookings need an address with line1 and city", details={"field": "address"}
            )
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValidationError("currency must be a 3-letter code", details={"currency": self.currency})
        if not self.services:
            raise ValidationError("at least one service is required", details={"field": "services"})

        for name in MONEY_FIELDS:
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must not be negative", details={"field": name})

        per_staff: dict[int, list[LineItemRequest]] = {}
        for item in self.schedule_line_items():
            if item.duration_minutes <= 0:
                raise ValidationError(
                    "duration_minutes must be positive", details={"offering_id": item.offering_id}
                )
            if item.price < 0:
                raise ValidationError("price must not be negative", details={"offering_id": item.offering_id})
            if item.buffer_minutes < 0:
                raise ValidationError(
                    "buffer_minutes must not be negative", details={"offering_id": item.offering_id}
                )
            if item.scheduled_end_at <= item.scheduled_start_at:
                raise ValidationError(
                    "scheduled_end_at must be after scheduled_start_at",
                    details={"offering_id": item.offering_id},
                )
            if item.staff_id is not None:
                per_staff.setdefault(item.staff_id, []).append(item)

        for staff_id, items in per_staff.items():
            items = sorted(items, key=lambda item: item.scheduled_start_at)
            for previous, current in zip(items, items[1:]):
                if current.scheduled_start_at < previous.scheduled_end_at:
                    raise ValidationError(
                        "services assigned to the same staff member overlap",
                        details={"staff_id": staff_id},
                    )


def generate_booking_number(now: datetime | None = None) -> str:
    now = now or utc_now()
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"BK{now:%y%m%d}-{suffix}"


def _insert_booking(request: BookingRequest, items: list[LineItemRequest]) -> Booking:
    booking = Booking(
        booking_number=generate_booking_number(),
        customer_id=request.customer_id,
        provider_id=request.provider_id,
        status=request.status,
        booking_source=request.booking_source,
        location_type=request.location_type,
        scheduled_at=request.scheduled_at,
        scheduled_end_at=request.scheduled_end_at,
        subtotal=request.subtotal,
        travel_fee=request.travel_fee,
        service_fee_amount=request.service_fee_amount,
        tip_amount=request.tip_amount,
        tax_amount=request.tax_amount,
        discount_amount=request.discount_amount,
        total_amount=request.total_amount,
        currency=request.currency,
        special_requests=request.special_requests,
    )
    if request.location_type == "at_home":
        for key in ADDRESS_FIELDS:
            setattr(booking, f"address_{key}", request.address.get(key))

    db.session.add(booking)
    db.session.flush()  # Flush to get the ID before inserting line items

    for item in items:
        db.session.add(
            BookingService(
                booking_id=booking.booking_id,
                offering_id=item.offering_id,
                staff_id=item.staff_id,
                duration_minutes=item.duration_minutes,
                price=item.price,
                currency=item.currency,
                scheduled_start_at=item.scheduled_start_at,
                scheduled_end_at=item.scheduled_end_at,
            )
        )
    db.session.flush()
    return booking


def create_booking_with_locking(request: BookingRequest) -> int:
    """Create a booking and its line items as one all-or-nothing unit.

    Raises ValidationError before touching the database, SlotConflict when
    any assigned staff member already has an active booking overlapping the
    requested window, and StorageError for any other database failure. In
    every failure case the transaction is rolled back and no rows remain.
    Line items without staff skip the conflict check.
    """
    request.validate()
    items = request.schedule_line_items()
    buffer = timedelta(minutes=current_app.config["BOOKING_BUFFER_MINUTES"])

    with staff_slot_lock(item.staff_id for item in items) as staff_ids:
        try:
            acquire_advisory_locks(staff_ids)
            for item in items:
                if item.staff_id is None:
                    continue
                conflicts = lock_conflicting_services(
                    item.staff_id,
                    item.scheduled_start_at - buffer,
                    item.scheduled_end_at + buffer,
                )
                if conflicts:
                    raise SlotConflict(
                        "This time slot is no longer available. Please select another time.",
                        details={
                            "staff_id": item.staff_id,
                            "scheduled_start_at": item.scheduled_start_at.isoformat(),
                            "scheduled_end_at": item.scheduled_end_at.isoformat(),
                            "conflict_count": conflicts,
                        },
                    )

            booking = _insert_booking(request, items)
            booking_id = booking.booking_id
            db.session.commit()
        except BookingError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Failed to create booking atomically", exc_info=exc)
            raise StorageError("Failed to create booking") from exc

    current_app.logger.info(
        "Created booking %s for customer %s with %d services",
        booking_id,
        request.customer_id,
        len(items),
    )
    return booking_id
