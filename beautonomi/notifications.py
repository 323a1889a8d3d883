"""In-app notifications recorded after booking changes.

Delivery (push, email, SMS) happens elsewhere. Recording is fire-and-forget:
it runs after the booking has been committed and a failure here never undoes
or fails the booking change that triggered it.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Booking, Notification

_MESSAGES = {
    "booking_created": ("Booking Received", "Your booking {number} for {when} has been received."),
    "booking_confirmed": ("Booking Confirmed", "Your booking {number} for {when} is confirmed."),
    "booking_completed": ("Booking Completed", "Your booking {number} has been completed."),
    "booking_cancelled": ("Booking Cancelled", "Your booking {number} for {when} has been cancelled."),
    "booking_no_show": ("Missed Booking", "You missed your booking {number} for {when}."),
}


def notify_customer(booking: Booking, notification_type: str) -> Notification | None:
    title, template = _MESSAGES[notification_type]
    booking_id = booking.booking_id
    notification = Notification(
        user_id=booking.customer_id,
        booking_id=booking_id,
        title=title,
        message=template.format(
            number=booking.booking_number,
            when=booking.scheduled_at.strftime("%B %d, %Y at %I:%M %p"),
        ),
        notification_type=notification_type,
    )
    try:
        db.session.add(notification)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Failed to record %s notification for booking %s", notification_type, booking_id, exc_info=exc
        )
        return None
    return notification
