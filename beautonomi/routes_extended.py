"""Loyalty routes: balances and idempotent credits."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .booking_writer import parse_datetime, parse_int, parse_optional_text
from .extensions import db
from .ledger import credit_once, get_points_balance
from .models import LoyaltyPointTransaction, User
from .routes import json_object

bp_ext = Blueprint("api_ext", __name__)


@bp_ext.get("/users/<int:user_id>/loyalty")
def get_user_loyalty(user_id: int) -> tuple[dict[str, object], int]:
    """Get a user's loyalty balance and ledger history, newest first.
    ---
    tags:
      - Loyalty
    parameters:
      - name: user_id
        in: path
        type: integer
        required: true
      - name: limit
        in: query
        type: integer
        default: 50
        maximum: 200
    responses:
      200:
        description: Balance and ledger entries
      404:
        description: User not found
      500:
        description: Database error
    """
    try:
        limit = min(200, max(1, int(request.args.get("limit", 50))))
    except ValueError:
        return jsonify({"error": "invalid_request", "message": "limit must be an integer"}), 400

    try:
        user = db.session.get(User, user_id)
        if not user:
            return jsonify({"error": "user_not_found", "message": "User not found"}), 404

        entries = (
            LoyaltyPointTransaction.query.filter(LoyaltyPointTransaction.user_id == user_id)
            .order_by(LoyaltyPointTransaction.created_at.desc(), LoyaltyPointTransaction.transaction_id.desc())
            .limit(limit)
            .all()
        )

        return jsonify({
            "user_id": user_id,
            "points_balance": get_points_balance(user_id),
            "transactions": [entry.to_dict() for entry in entries],
        }), 200

    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch loyalty ledger", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_ext.post("/loyalty/credits")
def post_loyalty_credit() -> tuple[dict[str, object], int]:
    """Credit points for an external event, at most once per event.

    Webhooks and background jobs call this with the same reference every
    time they replay an event; replays answer 200 with ``already_applied``
    instead of crediting again.
    ---
    tags:
      - Loyalty
    responses:
      201:
        description: Credit recorded
      200:
        description: Credit had already been applied
      400:
        description: Invalid payload
      404:
        description: User not found
    """
    payload = json_object()
    required = ("user_id", "reference_id", "reference_type", "points")
    missing = [name for name in required if payload.get(name) in (None, "")]
    if missing:
        return jsonify({
            "error": "invalid_payload",
            "message": f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required",
        }), 400

    user_id = parse_int(payload["user_id"], "user_id")
    if db.session.get(User, user_id) is None:
        return jsonify({"error": "user_not_found", "message": "User not found"}), 404

    expires_at = payload.get("expires_at")
    entry, created = credit_once(
        user_id=user_id,
        reference_id=str(payload["reference_id"]),
        reference_type=str(payload["reference_type"]),
        transaction_type=str(payload.get("transaction_type") or "earned"),
        points=parse_int(payload["points"], "points"),
        description=parse_optional_text(payload.get("description"), "description"),
        expires_at=parse_datetime(expires_at, "expires_at") if expires_at else None,
    )

    if not created:
        current_app.logger.info(
            "Loyalty credit for %s %s already applied", entry.reference_type, entry.reference_id
        )
        return jsonify({"status": "already_applied", "transaction": entry.to_dict()}), 200
    return jsonify({"status": "ok", "transaction": entry.to_dict()}), 201
