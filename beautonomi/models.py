"""Database models for the Beautonomi booking core."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from .extensions import db


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalise a datetime to aware UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime | None) -> str | None:
    """Serialise a stored timestamp, treating naive values as UTC."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def _money(value: Decimal | None) -> str | None:
    return None if value is None else f"{Decimal(value):.2f}"


BOOKING_STATUSES = (
    "pending",
    "confirmed",
    "checked_in",
    "started",
    "completed",
    "cancelled",
    "no_show",
)

# Bookings in these states no longer hold their staff member's time.
INACTIVE_BOOKING_STATUSES = ("cancelled", "no_show")

LEDGER_TRANSACTION_TYPES = ("earned", "redeemed", "adjusted")


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(
        db.Enum(
            "customer",
            "provider",
            "superadmin",
            name="user_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="customer",
    )
    phone = db.Column(db.String(30))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
        }


class Provider(db.Model):
    __tablename__ = "providers"

    provider_id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    business_name = db.Column(db.String(150), nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default="ZAR")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    owner = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.provider_id,
            "business_name": self.business_name,
            "currency": self.currency,
            "owner": self.owner.to_dict_basic() if self.owner else None,
        }


class Staff(db.Model):
    """A team member at a provider whose calendar bookings are assigned to."""

    __tablename__ = "provider_staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("providers.provider_id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    name = db.Column(db.String(150), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    provider = db.relationship("Provider")
    user = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.staff_id,
            "provider_id": self.provider_id,
            "user_id": self.user_id,
            "name": self.name,
            "is_active": bool(self.is_active),
        }


class Offering(db.Model):
    """A bookable service on a provider's menu."""

    __tablename__ = "offerings"

    offering_id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("providers.provider_id"), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default="ZAR")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (
        db.CheckConstraint("duration_minutes > 0", name="ck_offerings_duration_positive"),
        db.CheckConstraint("price >= 0", name="ck_offerings_price_non_negative"),
    )

    provider = db.relationship("Provider")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.offering_id,
            "provider_id": self.provider_id,
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "price": _money(self.price),
            "currency": self.currency,
            "is_active": bool(self.is_active),
        }


class Booking(db.Model):
    """A customer's reservation of one or more services with a provider."""

    __tablename__ = "bookings"

    booking_id = db.Column(db.Integer, primary_key=True)
    booking_number = db.Column(db.String(32), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey("providers.provider_id"), nullable=False)
    status = db.Column(
        db.Enum(
            *BOOKING_STATUSES,
            name="booking_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="pending",
    )
    booking_source = db.Column(
        db.Enum("online", "walk_in", name="booking_source", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="online",
    )
    location_type = db.Column(
        db.Enum("at_salon", "at_home", name="location_type", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="at_salon",
    )

    # Address snapshot for at-home bookings
    address_line1 = db.Column(db.String(255))
    address_line2 = db.Column(db.String(255))
    address_city = db.Column(db.String(100))
    address_state = db.Column(db.String(100))
    address_country = db.Column(db.String(100))
    address_postal_code = db.Column(db.String(20))

    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    scheduled_end_at = db.Column(db.DateTime(timezone=True), nullable=False)

    subtotal = db.Column(db.Numeric(10, 2), nullable=False)
    travel_fee = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0"))
    service_fee_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0"))
    tip_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0"))
    tax_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default="ZAR")
    payment_status = db.Column(db.String(20), nullable=False, default="pending")

    special_requests = db.Column(db.Text)
    loyalty_points_earned = db.Column(db.Integer, nullable=False, default=0)

    completed_at = db.Column(db.DateTime(timezone=True))
    cancelled_at = db.Column(db.DateTime(timezone=True))
    cancellation_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        db.CheckConstraint("subtotal >= 0", name="ck_bookings_subtotal_non_negative"),
        db.CheckConstraint("travel_fee >= 0", name="ck_bookings_travel_fee_non_negative"),
        db.CheckConstraint("service_fee_amount >= 0", name="ck_bookings_service_fee_non_negative"),
        db.CheckConstraint("tip_amount >= 0", name="ck_bookings_tip_non_negative"),
        db.CheckConstraint("tax_amount >= 0", name="ck_bookings_tax_non_negative"),
        db.CheckConstraint("discount_amount >= 0", name="ck_bookings_discount_non_negative"),
        db.CheckConstraint("total_amount >= 0", name="ck_bookings_total_non_negative"),
        db.Index("idx_bookings_provider_status", "provider_id", "status"),
        db.Index("idx_bookings_customer_status", "customer_id", "status"),
    )

    customer = db.relationship("User")
    provider = db.relationship("Provider")
    services = db.relationship(
        "BookingService",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingService.scheduled_start_at",
    )

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_BOOKING_STATUSES

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.booking_id,
            "booking_number": self.booking_number,
            "customer_id": self.customer_id,
            "provider_id": self.provider_id,
            "status": self.status,
            "booking_source": self.booking_source,
            "location_type": self.location_type,
            "address": {
                "line1": self.address_line1,
                "line2": self.address_line2,
                "city": self.address_city,
                "state": self.address_state,
                "country": self.address_country,
                "postal_code": self.address_postal_code,
            } if self.location_type == "at_home" else None,
            "scheduled_at": isoformat_utc(self.scheduled_at),
            "scheduled_end_at": isoformat_utc(self.scheduled_end_at),
            "subtotal": _money(self.subtotal),
            "travel_fee": _money(self.travel_fee),
            "service_fee_amount": _money(self.service_fee_amount),
            "tip_amount": _money(self.tip_amount),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "payment_status": self.payment_status,
            "special_requests": self.special_requests,
            "loyalty_points_earned": self.loyalty_points_earned,
            "services": [item.to_dict() for item in self.services],
            "completed_at": isoformat_utc(self.completed_at),
            "cancelled_at": isoformat_utc(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }


class BookingService(db.Model):
    """One service line within a booking, with its own staff and time window."""

    __tablename__ = "booking_services"

    booking_service_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(
        db.Integer,
        db.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
        nullable=False,
    )
    offering_id = db.Column(db.Integer, db.ForeignKey("offerings.offering_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("provider_staff.staff_id"), nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default="ZAR")
    scheduled_start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    scheduled_end_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_booking_services_price_non_negative"),
        db.CheckConstraint("duration_minutes > 0", name="ck_booking_services_duration_positive"),
        db.CheckConstraint(
            "scheduled_end_at > scheduled_start_at",
            name="ck_booking_services_window_ordered",
        ),
        db.Index("idx_booking_services_staff_window", "staff_id", "scheduled_start_at", "scheduled_end_at"),
    )

    booking = db.relationship("Booking", back_populates="services")
    offering = db.relationship("Offering")
    staff = db.relationship("Staff")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.booking_service_id,
            "booking_id": self.booking_id,
            "offering_id": self.offering_id,
            "offering_name": self.offering.name if self.offering else None,
            "staff_id": self.staff_id,
            "duration_minutes": self.duration_minutes,
            "price": _money(self.price),
            "currency": self.currency,
            "scheduled_start_at": isoformat_utc(self.scheduled_start_at),
            "scheduled_end_at": isoformat_utc(self.scheduled_end_at),
        }


class LoyaltyPointTransaction(db.Model):
    """Immutable loyalty ledger entry.

    The unique constraint over (user, reference, reference type, transaction
    type) is the idempotency key: a second credit for the same event fails
    at insert time instead of double-crediting.
    """

    __tablename__ = "loyalty_point_transactions"

    transaction_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    transaction_type = db.Column(
        db.Enum(
            *LEDGER_TRANSACTION_TYPES,
            name="loyalty_transaction_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    points = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text)
    reference_id = db.Column(db.String(64), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "user_id",
            "reference_id",
            "reference_type",
            "transaction_type",
            name="uq_loyalty_point_transactions_reference",
        ),
    )

    user = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.transaction_id,
            "user_id": self.user_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "description": self.description,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "expires_at": isoformat_utc(self.expires_at),
            "created_at": isoformat_utc(self.created_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "booking_id": self.booking_id,
            "title": self.title,
            "message": self.message,
            "notification_type": self.notification_type,
            "is_read": bool(self.is_read),
            "created_at": isoformat_utc(self.created_at),
        }
