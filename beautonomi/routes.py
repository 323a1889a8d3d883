"""HTTP routes for the Beautonomi booking API."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .booking_writer import (BookingRequest, create_booking_with_locking, parse_datetime, parse_decimal, parse_int,
                             parse_optional_text)
from .errors import BookingError, StorageError, ValidationError
from .extensions import db
from .ledger import award_points_for_booking, reverse_points_for_booking
from .models import BOOKING_STATUSES, Booking, Offering, Provider, Staff, User, utc_now
from .notifications import notify_customer
from .slot_lock import find_conflicts

bp = Blueprint("api", __name__)

# Allowed status changes; re-applying the current status is always allowed.
STATUS_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"checked_in", "started", "completed", "cancelled", "no_show"},
    "checked_in": {"started", "completed", "cancelled", "no_show"},
    "started": {"completed"},
    "completed": {"cancelled"},
    "cancelled": set(),
    "no_show": set(),
}

FEE_FIELDS = ("travel_fee", "service_fee_amount", "tip_amount", "tax_amount")


@bp.app_errorhandler(BookingError)
def handle_booking_error(exc: BookingError):
    return jsonify(exc.to_dict()), exc.status


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


def json_object() -> dict[str, object]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


class _NotFound(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _resolve_services(provider: Provider, services: object) -> list[dict[str, object]]:
    """Check offerings and staff against the provider and fill offering defaults."""
    if not isinstance(services, list) or not services:
        raise ValidationError("at least one service is required", details={"field": "services"})

    resolved = []
    for raw in services:
        if not isinstance(raw, dict):
            raise ValidationError("each service must be an object")
        item = dict(raw)
        # Accept both snake_case and the camelCase keys the booking widgets send
        item.setdefault("offering_id", raw.get("service_id") or raw.get("serviceId"))
        if raw.get("staffId") is not None:
            item.setdefault("staff_id", raw.get("staffId"))
        if item.get("offering_id") is None:
            raise ValidationError("offering_id is required for each service", details={"field": "offering_id"})

        offering = db.session.get(Offering, parse_int(item["offering_id"], "offering_id"))
        if offering is None or not offering.is_active:
            raise _NotFound("Offering not found")
        if offering.provider_id != provider.provider_id:
            raise ValidationError(
                "offering does not belong to this provider",
                details={"offering_id": offering.offering_id},
            )
        if item.get("duration_minutes") is None:
            item["duration_minutes"] = offering.duration_minutes
        if item.get("price") is None:
            item["price"] = str(offering.price)
        if not item.get("currency"):
            item["currency"] = offering.currency

        if item.get("staff_id") is not None:
            staff = db.session.get(Staff, parse_int(item["staff_id"], "staff_id"))
            if staff is None or not staff.is_active:
                raise _NotFound("Staff not found")
            if staff.provider_id != provider.provider_id:
                raise ValidationError(
                    "staff member does not work for this provider",
                    details={"staff_id": staff.staff_id},
                )
        resolved.append(item)
    return resolved


def _fill_totals(payload: dict[str, object], services: list[dict[str, object]]) -> None:
    """Default subtotal and total when the caller did not price the booking."""
    if payload.get("subtotal") is None:
        payload["subtotal"] = str(sum((parse_decimal(item["price"], "price") for item in services), Decimal("0")))
    if payload.get("total_amount") is None:
        total = parse_decimal(payload["subtotal"], "subtotal")
        for name in FEE_FIELDS:
            total += parse_decimal(payload.get(name) or 0, name)
        total -= parse_decimal(payload.get("discount_amount") or 0, "discount_amount")
        payload["total_amount"] = str(total)


def _walk_in_customer_id(payload: dict[str, object]) -> int:
    """Find the walk-in client by email, then phone, or register them.

    New clients are committed before the booking is attempted, so a booking
    that then fails still leaves the client on file for the retry.
    """
    email = parse_optional_text(payload.get("customer_email"), "customer_email")
    phone = parse_optional_text(payload.get("customer_phone"), "customer_phone")
    name = parse_optional_text(payload.get("customer_name"), "customer_name")

    if email:
        user = User.query.filter(User.email == email).first()
        if user:
            return user.user_id
    if phone:
        user = User.query.filter(User.phone == phone).first()
        if user:
            return user.user_id

    if not name:
        raise ValidationError(
            "customer_name is required for walk-in clients without an account",
            details={"missing": ["customer_name"]},
        )

    # Every user needs a unique email; walk-ins without one get a placeholder
    user = User(
        full_name=name,
        email=email or f"walkin+{uuid.uuid4().hex}@beautonomi.invalid",
        phone=phone,
        role="customer",
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        existing = User.query.filter(User.email == email).first() if email else None
        if existing:
            return existing.user_id
        current_app.logger.exception("IntegrityError but no existing walk-in customer found", exc_info=exc)
        raise StorageError("Failed to register walk-in customer") from exc

    current_app.logger.info("Registered walk-in customer %s", user.user_id)
    return user.user_id


def _prepare_booking(payload: dict[str, object], provider_id: int) -> BookingRequest:
    provider = db.session.get(Provider, provider_id)
    if provider is None:
        raise _NotFound("Provider not found")

    customer_id = payload.get("customer_id")
    walk_in = payload.get("booking_source") == "walk_in"
    if customer_id is None and not walk_in:
        raise ValidationError("customer_id is required", details={"missing": ["customer_id"]})
    if customer_id is not None and db.session.get(User, parse_int(customer_id, "customer_id")) is None:
        raise _NotFound("Customer not found")

    payload["provider_id"] = provider_id
    payload.setdefault("currency", provider.currency)
    payload["services"] = _resolve_services(provider, payload.get("services"))
    _fill_totals(payload, payload["services"])
    if customer_id is None:
        payload["customer_id"] = _walk_in_customer_id(payload)
    return BookingRequest.from_payload(payload, current_app.config["DEFAULT_CURRENCY"])


def _create_and_respond(payload: dict[str, object], provider_id: int):
    try:
        booking_request = _prepare_booking(payload, provider_id)
    except _NotFound as exc:
        return jsonify({"error": "not_found", "message": exc.message}), 404
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to load booking references", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    booking_id = create_booking_with_locking(booking_request)

    booking = db.session.get(Booking, booking_id)
    notify_customer(booking, "booking_confirmed" if booking.status == "confirmed" else "booking_created")
    return jsonify({"message": "Booking created successfully", "booking": booking.to_dict()}), 201


@bp.post("/bookings")
def create_booking() -> tuple[dict[str, object], int]:
    """Create a booking from the customer checkout.
    ---
    tags:
      - Bookings
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            customer_id:
              type: integer
            provider_id:
              type: integer
            scheduled_at:
              type: string
              format: date-time
            services:
              type: array
              items:
                type: object
                properties:
                  offering_id:
                    type: integer
                  staff_id:
                    type: integer
                  duration_minutes:
                    type: integer
                  price:
                    type: string
            subtotal:
              type: string
            total_amount:
              type: string
          required:
            - customer_id
            - provider_id
            - scheduled_at
            - services
    responses:
      201:
        description: Booking created
      400:
        description: Invalid payload
      404:
        description: Provider, customer, offering or staff not found
      409:
        description: The time slot was just taken (BOOKING_SLOT_CONFLICT)
      500:
        description: Database error
    """
    payload = json_object()
    if not payload.get("provider_id"):
        return jsonify({"error": "invalid_payload", "message": "provider_id is required"}), 400

    payload["booking_source"] = "online"
    return _create_and_respond(payload, parse_int(payload["provider_id"], "provider_id"))


@bp.post("/providers/<int:provider_id>/walk-ins")
def create_walk_in(provider_id: int) -> tuple[dict[str, object], int]:
    """Book a walk-in client from the provider's front desk.

    Walk-ins are confirmed immediately and start now unless the payload
    gives another ``scheduled_at``. Without a ``customer_id`` the client is
    matched by ``customer_email``, then ``customer_phone``, and registered
    from ``customer_name`` when neither matches. The platform service fee is
    never charged on walk-ins.
    ---
    tags:
      - Bookings
    responses:
      201:
        description: Walk-in booking created
      409:
        description: The staff member is busy at that time
    """
    payload = json_object()
    payload.setdefault("scheduled_at", utc_now().replace(second=0, microsecond=0).isoformat())
    payload["status"] = "confirmed"
    payload["booking_source"] = "walk_in"
    payload["service_fee_amount"] = "0"
    return _create_and_respond(payload, provider_id)


@bp.get("/bookings/<int:booking_id>")
def get_booking(booking_id: int) -> tuple[dict[str, object], int]:
    """Get a booking with its service line items."""
    try:
        booking = db.session.get(Booking, booking_id)
        if not booking:
            return jsonify({"error": "not_found", "message": "Booking not found"}), 404

        booking_data = booking.to_dict()
        booking_data["provider"] = booking.provider.to_dict() if booking.provider else None
        booking_data["customer"] = booking.customer.to_dict_basic() if booking.customer else None
        return jsonify({"booking": booking_data}), 200

    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch booking", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.put("/bookings/<int:booking_id>/status")
def update_booking_status(booking_id: int) -> tuple[dict[str, object], int]:
    """Move a booking through its lifecycle.

    Completing a booking credits the customer's loyalty points exactly once,
    however many times the completion is replayed. Cancelling is a soft
    delete: the row stays, its time is released, and any points it earned
    are reversed.
    ---
    tags:
      - Bookings
    parameters:
      - in: path
        name: booking_id
        required: true
        schema:
          type: integer
      - in: body
        name: body
        required: true
        schema:
          properties:
            status:
              type: string
              enum: [pending, confirmed, checked_in, started, completed, cancelled, no_show]
            cancellation_reason:
              type: string
    responses:
      200:
        description: Status updated
      400:
        description: Invalid status or transition
      404:
        description: Booking not found
      500:
        description: Database error
    """
    data = json_object()
    new_status = data.get("status")
    if not new_status:
        return jsonify({"error": "invalid_input", "message": "status is required"}), 400
    if new_status not in BOOKING_STATUSES:
        return (
            jsonify(
                {
                    "error": "invalid_status",
                    "message": f"Status must be one of: {', '.join(BOOKING_STATUSES)}",
                }
            ),
            400,
        )
    cancellation_reason = parse_optional_text(data.get("cancellation_reason"), "cancellation_reason")

    try:
        booking = db.session.get(Booking, booking_id)
        if not booking:
            return jsonify({"error": "not_found", "message": "Booking not found"}), 404

        previous_status = booking.status
        if new_status != previous_status and new_status not in STATUS_TRANSITIONS[previous_status]:
            return (
                jsonify(
                    {
                        "error": "invalid_transition",
                        "message": f"Cannot change a {previous_status} booking to {new_status}",
                    }
                ),
                400,
            )

        booking.status = new_status
        if new_status == "completed" and booking.completed_at is None:
            booking.completed_at = utc_now()
        elif new_status == "cancelled" and booking.cancelled_at is None:
            booking.cancelled_at = utc_now()
            booking.cancellation_reason = cancellation_reason
        db.session.commit()

    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update booking status", exc_info=exc)
        raise StorageError("Failed to update booking status") from exc

    loyalty = None
    if new_status == "completed":
        loyalty = award_points_for_booking(booking)
    elif new_status == "cancelled":
        loyalty = reverse_points_for_booking(booking)

    if new_status != previous_status and new_status in ("confirmed", "completed", "cancelled", "no_show"):
        notify_customer(booking, f"booking_{new_status}")

    response: dict[str, object] = {"booking": booking.to_dict()}
    if loyalty is not None:
        entry, applied = loyalty
        response["loyalty"] = {"entry": entry.to_dict(), "applied": applied}
    return jsonify(response), 200


@bp.get("/staff/<int:staff_id>/bookings")
def list_staff_bookings(staff_id: int) -> tuple[dict[str, object], int]:
    """List a staff member's active booked services in a time range.

    ``start`` and ``end`` are ISO datetimes and default to the current UTC day.
    The result reflects committed bookings only and is not locked.
    """
    try:
        staff = db.session.get(Staff, staff_id)
        if not staff:
            return jsonify({"error": "not_found", "message": "Staff not found"}), 404

        if request.args.get("start"):
            start = parse_datetime(request.args["start"], "start")
        else:
            start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        end = parse_datetime(request.args["end"], "end") if request.args.get("end") else start + timedelta(days=1)

        services = find_conflicts(staff_id, start, end)
        return jsonify({
            "staff_id": staff_id,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "services": [item.to_dict() for item in services],
        }), 200

    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch staff bookings", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


def register_routes(app: Flask) -> None:
    from .routes_extended import bp_ext

    app.register_blueprint(bp)
    app.register_blueprint(bp_ext)
