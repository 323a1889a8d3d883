"""Shared pytest fixtures: an app on SQLite plus a small provider catalog."""
from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure the project root is available on sys.path so tests can import the package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from beautonomi import create_app  # noqa: E402
from beautonomi.config import TestingConfig  # noqa: E402
from beautonomi.extensions import db  # noqa: E402
from beautonomi.models import Offering, Provider, Staff, User  # noqa: E402


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """App backed by a SQLite file so separate threads get separate connections."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'bookings.db'}",
        "BOOKING_LOCK_TIMEOUT_SECONDS": 10.0,
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 15}},
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


def seed_catalog(app) -> dict[str, int]:
    with app.app_context():
        owner = User(full_name="Thandi Owner", email="owner@example.com", role="provider")
        customer = User(full_name="Charlie Customer", email="charlie@example.com", role="customer")
        other_customer = User(full_name="Dana Customer", email="dana@example.com", role="customer")
        db.session.add_all([owner, customer, other_customer])
        db.session.flush()

        provider = Provider(owner_id=owner.user_id, business_name="Glow Studio", currency="ZAR")
        other_provider = Provider(owner_id=owner.user_id, business_name="Other Studio", currency="ZAR")
        db.session.add_all([provider, other_provider])
        db.session.flush()

        stylist = Staff(provider_id=provider.provider_id, name="Sam Stylist")
        nail_tech = Staff(provider_id=provider.provider_id, name="Nia Nails")
        outsider = Staff(provider_id=other_provider.provider_id, name="Olly Outsider")
        haircut = Offering(
            provider_id=provider.provider_id,
            name="Haircut",
            duration_minutes=60,
            price=Decimal("250.00"),
            currency="ZAR",
        )
        manicure = Offering(
            provider_id=provider.provider_id,
            name="Manicure",
            duration_minutes=30,
            price=Decimal("120.50"),
            currency="ZAR",
        )
        db.session.add_all([stylist, nail_tech, outsider, haircut, manicure])
        db.session.commit()

        return {
            "customer_id": customer.user_id,
            "other_customer_id": other_customer.user_id,
            "provider_id": provider.provider_id,
            "other_provider_id": other_provider.provider_id,
            "staff_id": stylist.staff_id,
            "second_staff_id": nail_tech.staff_id,
            "outsider_staff_id": outsider.staff_id,
            "haircut_id": haircut.offering_id,
            "manicure_id": manicure.offering_id,
        }


@pytest.fixture
def catalog(app) -> dict[str, int]:
    return seed_catalog(app)


@pytest.fixture
def file_catalog(file_app) -> dict[str, int]:
    return seed_catalog(file_app)


@pytest.fixture
def make_booking_request():
    """Build a one-service BookingRequest for direct calls into the writer."""
    from datetime import timedelta

    from beautonomi.booking_writer import BookingRequest, LineItemRequest

    def build(ids: dict[str, int], starts_at, duration_minutes: int = 60, staff_id="default", customer_id=None):
        if staff_id == "default":
            staff_id = ids["staff_id"]
        price = Decimal("250.00")
        return BookingRequest(
            customer_id=customer_id or ids["customer_id"],
            provider_id=ids["provider_id"],
            scheduled_at=starts_at,
            services=[
                LineItemRequest(
                    offering_id=ids["haircut_id"],
                    duration_minutes=duration_minutes,
                    price=price,
                    currency="ZAR",
                    staff_id=staff_id,
                    scheduled_start_at=starts_at,
                    scheduled_end_at=starts_at + timedelta(minutes=duration_minutes),
                )
            ],
            subtotal=price,
            total_amount=price,
        )

    return build
