"""HTTP tests for booking creation and lookup."""
from __future__ import annotations

from beautonomi.extensions import db
from beautonomi.models import Booking, Notification, Offering, Staff, User

SLOT = "2030-05-01T09:00:00Z"


def _payload(catalog, **overrides):
    payload = {
        "customer_id": catalog["customer_id"],
        "provider_id": catalog["provider_id"],
        "scheduled_at": SLOT,
        "services": [{"offering_id": catalog["haircut_id"], "staff_id": catalog["staff_id"]}],
    }
    payload.update(overrides)
    return payload


def test_create_booking_fills_offering_defaults(client, app, catalog) -> None:
    response = client.post(
        "/bookings",
        json=_payload(
            catalog,
            services=[
                {"offering_id": catalog["haircut_id"], "staff_id": catalog["staff_id"]},
                {"serviceId": catalog["manicure_id"], "staffId": catalog["second_staff_id"]},
            ],
            travel_fee="30",
        ),
    )

    assert response.status_code == 201
    booking = response.get_json()["booking"]
    assert booking["status"] == "pending"
    assert booking["booking_source"] == "online"
    assert booking["subtotal"] == "370.50"
    assert booking["total_amount"] == "400.50"
    assert booking["currency"] == "ZAR"
    assert booking["scheduled_end_at"] == "2030-05-01T10:30:00+00:00"
    assert [item["offering_name"] for item in booking["services"]] == ["Haircut", "Manicure"]
    assert booking["services"][1]["scheduled_start_at"] == "2030-05-01T10:00:00+00:00"

    with app.app_context():
        notification = Notification.query.one()
        assert notification.notification_type == "booking_created"
        assert notification.booking_id == booking["id"]


def test_caller_totals_are_kept(client, catalog) -> None:
    response = client.post("/bookings", json=_payload(catalog, subtotal="200.00", total_amount="180.00"))

    assert response.status_code == 201
    booking = response.get_json()["booking"]
    assert booking["subtotal"] == "200.00"
    assert booking["total_amount"] == "180.00"


def test_overlapping_booking_returns_slot_conflict(client, app, catalog) -> None:
    assert client.post("/bookings", json=_payload(catalog)).status_code == 201

    response = client.post(
        "/bookings",
        json=_payload(catalog, customer_id=catalog["other_customer_id"], scheduled_at="2030-05-01T09:30:00Z"),
    )

    assert response.status_code == 409
    body = response.get_json()
    assert body["error"] == "BOOKING_SLOT_CONFLICT"
    assert body["details"]["staff_id"] == catalog["staff_id"]
    with app.app_context():
        assert Booking.query.count() == 1


def test_back_to_back_bookings_are_accepted(client, catalog) -> None:
    assert client.post("/bookings", json=_payload(catalog)).status_code == 201
    response = client.post("/bookings", json=_payload(catalog, scheduled_at="2030-05-01T10:00:00Z"))

    assert response.status_code == 201


def test_missing_provider_id_is_rejected(client, catalog) -> None:
    payload = _payload(catalog)
    del payload["provider_id"]

    response = client.post("/bookings", json=payload)

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_non_object_body_is_rejected(client) -> None:
    response = client.post("/bookings", json=[1, 2, 3])

    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"


def test_unknown_references_return_404(client, app, catalog) -> None:
    assert client.post("/bookings", json=_payload(catalog, provider_id=9999)).status_code == 404
    assert client.post("/bookings", json=_payload(catalog, customer_id=9999)).status_code == 404
    response = client.post("/bookings", json=_payload(catalog, services=[{"offering_id": 9999}]))
    assert response.status_code == 404
    assert response.get_json()["message"] == "Offering not found"

    with app.app_context():
        staff = db.session.get(Staff, catalog["staff_id"])
        staff.is_active = False
        db.session.commit()
    response = client.post("/bookings", json=_payload(catalog))
    assert response.status_code == 404
    assert response.get_json()["message"] == "Staff not found"


def test_inactive_offering_is_not_bookable(client, app, catalog) -> None:
    with app.app_context():
        offering = db.session.get(Offering, catalog["haircut_id"])
        offering.is_active = False
        db.session.commit()

    assert client.post("/bookings", json=_payload(catalog)).status_code == 404


def test_staff_from_another_provider_is_rejected(client, catalog) -> None:
    response = client.post(
        "/bookings",
        json=_payload(catalog, services=[{"offering_id": catalog["haircut_id"], "staff_id": catalog["outsider_staff_id"]}]),
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"


def test_invalid_values_return_validation_error(client, app, catalog) -> None:
    cases = [
        _payload(catalog, scheduled_at="tomorrow morning"),
        _payload(catalog, discount_amount="-10"),
        _payload(catalog, services=[]),
        _payload(catalog, location_type="at_home"),
        _payload(catalog, status="completed"),
        _payload(catalog, special_requests=42),
    ]
    for payload in cases:
        response = client.post("/bookings", json=payload)
        assert response.status_code == 400, payload
        assert response.get_json()["error"] == "VALIDATION_ERROR"

    with app.app_context():
        assert Booking.query.count() == 0


def test_at_home_booking_keeps_the_address(client, catalog) -> None:
    response = client.post(
        "/bookings",
        json=_payload(
            catalog,
            location_type="at_home",
            address={"line1": "12 Long Street", "city": "Cape Town", "postal_code": "8001"},
        ),
    )

    assert response.status_code == 201
    address = response.get_json()["booking"]["address"]
    assert address["line1"] == "12 Long Street"
    assert address["city"] == "Cape Town"


def test_walk_in_is_confirmed_immediately(client, app, catalog) -> None:
    response = client.post(
        f"/providers/{catalog['provider_id']}/walk-ins",
        json={
            "customer_id": catalog["customer_id"],
            "scheduled_at": SLOT,
            "services": [{"offering_id": catalog["manicure_id"], "staff_id": catalog["second_staff_id"]}],
        },
    )

    assert response.status_code == 201
    booking = response.get_json()["booking"]
    assert booking["status"] == "confirmed"
    assert booking["booking_source"] == "walk_in"
    with app.app_context():
        assert Notification.query.one().notification_type == "booking_confirmed"


def test_walk_in_defaults_to_now(client, catalog) -> None:
    response = client.post(
        f"/providers/{catalog['provider_id']}/walk-ins",
        json={"customer_id": catalog["customer_id"], "services": [{"offering_id": catalog["manicure_id"]}]},
    )

    assert response.status_code == 201
    assert response.get_json()["booking"]["scheduled_at"] is not None


def test_walk_in_for_busy_staff_conflicts(client, catalog) -> None:
    assert client.post("/bookings", json=_payload(catalog)).status_code == 201

    response = client.post(
        f"/providers/{catalog['provider_id']}/walk-ins",
        json={
            "customer_id": catalog["other_customer_id"],
            "scheduled_at": "2030-05-01T09:45:00Z",
            "services": [{"offering_id": catalog["manicure_id"], "staff_id": catalog["staff_id"]}],
        },
    )

    assert response.status_code == 409


def test_get_booking(client, catalog) -> None:
    created = client.post("/bookings", json=_payload(catalog)).get_json()["booking"]

    response = client.get(f"/bookings/{created['id']}")

    assert response.status_code == 200
    booking = response.get_json()["booking"]
    assert booking["booking_number"] == created["booking_number"]
    assert booking["provider"]["business_name"] == "Glow Studio"
    assert booking["customer"]["email"] == "charlie@example.com"
    assert client.get("/bookings/9999").status_code == 404


def test_staff_schedule_lists_active_services_in_range(client, catalog) -> None:
    first = client.post("/bookings", json=_payload(catalog)).get_json()["booking"]
    cancelled = client.post("/bookings", json=_payload(catalog, scheduled_at="2030-05-01T13:00:00Z")).get_json()["booking"]
    client.put(f"/bookings/{cancelled['id']}/status", json={"status": "cancelled"})
    client.post("/bookings", json=_payload(catalog, scheduled_at="2030-05-02T09:00:00Z"))

    response = client.get(
        f"/staff/{catalog['staff_id']}/bookings",
        query_string={"start": "2030-05-01T00:00:00Z", "end": "2030-05-02T00:00:00Z"},
    )

    assert response.status_code == 200
    services = response.get_json()["services"]
    assert [item["booking_id"] for item in services] == [first["id"]]
    assert client.get("/staff/9999/bookings").status_code == 404


def _walk_in(client, catalog, **fields):
    payload = {
        "scheduled_at": SLOT,
        "services": [{"offering_id": catalog["manicure_id"], "staff_id": catalog["second_staff_id"]}],
    }
    payload.update(fields)
    return client.post(f"/providers/{catalog['provider_id']}/walk-ins", json=payload)


def test_walk_in_finds_the_client_by_email(client, app, catalog) -> None:
    response = _walk_in(client, catalog, customer_email="charlie@example.com", customer_name="Charlie")

    assert response.status_code == 201
    assert response.get_json()["booking"]["customer_id"] == catalog["customer_id"]
    with app.app_context():
        assert User.query.count() == 3


def test_walk_in_falls_back_to_the_phone_number(client, app, catalog) -> None:
    with app.app_context():
        dana = db.session.get(User, catalog["other_customer_id"])
        dana.phone = "+27821234567"
        db.session.commit()

    response = _walk_in(
        client, catalog, customer_email="unknown@example.com", customer_phone="+27821234567", customer_name="Dana"
    )

    assert response.status_code == 201
    assert response.get_json()["booking"]["customer_id"] == catalog["other_customer_id"]
    with app.app_context():
        assert User.query.count() == 3


def test_walk_in_registers_a_new_client(client, app, catalog) -> None:
    response = _walk_in(client, catalog, customer_name="  Nomsa Walk-in ", customer_phone="+27830000000")

    assert response.status_code == 201
    customer_id = response.get_json()["booking"]["customer_id"]
    with app.app_context():
        customer = db.session.get(User, customer_id)
        assert customer.full_name == "Nomsa Walk-in"
        assert customer.phone == "+27830000000"
        assert customer.role == "customer"
        assert customer.email.startswith("walkin+")
        assert customer.email.endswith("@beautonomi.invalid")


def test_walk_in_keeps_a_given_email_for_new_clients(client, app, catalog) -> None:
    response = _walk_in(client, catalog, customer_name="Lerato", customer_email="lerato@example.com")

    assert response.status_code == 201
    with app.app_context():
        customer = db.session.get(User, response.get_json()["booking"]["customer_id"])
        assert customer.email == "lerato@example.com"


def test_walk_in_without_client_details_needs_a_name(client, app, catalog) -> None:
    response = _walk_in(client, catalog, customer_email="nobody@example.com")

    assert response.status_code == 400
    assert response.get_json()["details"]["missing"] == ["customer_name"]
    with app.app_context():
        assert User.query.count() == 3
        assert Booking.query.count() == 0


def test_walk_in_client_fields_must_be_text(client, catalog) -> None:
    response = _walk_in(client, catalog, customer_name=["Nomsa"])

    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"


def test_walk_in_never_charges_the_service_fee(client, catalog) -> None:
    response = _walk_in(client, catalog, customer_id=catalog["customer_id"], service_fee_amount="25.00")

    assert response.status_code == 201
    booking = response.get_json()["booking"]
    assert booking["service_fee_amount"] == "0.00"
    assert booking["total_amount"] == booking["subtotal"] == "120.50"


def test_checkout_still_requires_a_customer(client, catalog) -> None:
    payload = _payload(catalog, customer_name="Someone")
    del payload["customer_id"]

    response = client.post("/bookings", json=payload)

    assert response.status_code == 400
    assert response.get_json()["details"]["missing"] == ["customer_id"]
