from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from api import ADMIN_USER_ID, app, get_uow
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork, SimulatedPaymentGateway


@pytest.fixture
def api_db():
    return InMemoryDatabase()


@pytest.fixture
def api_gateway(api_db):
    return SimulatedPaymentGateway(api_db)


@pytest.fixture
def client(api_db, api_gateway):
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db=api_db, payments=api_gateway)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _auth(user_id):
    return {"Authorization": f"Bearer {user_id}"}


ADMIN = _auth(ADMIN_USER_ID)


@pytest.fixture
def people(client):
    customer = client.post(
        "/api/v1/users", json={"full_name": "Ada", "email": "ada@customers.io", "role": "customer"},
    ).json()["data"]
    tailor_user = client.post(
        "/api/v1/users", json={"full_name": "Tomas", "email": "tomas@tailors.io", "role": "tailor"},
    ).json()["data"]
    tailor = client.post(
        "/api/v1/tailors",
        json={"business_name": "Tomas Bespoke", "payout_account_id": "acct_1"},
        headers=_auth(tailor_user["id"]),
    ).json()["data"]
    return {
        "customer": _auth(customer["id"]),
        "tailor": _auth(tailor_user["id"]),
        "tailor_id": tailor["id"],
    }


def _accepted_booking(client, people):
    booking = client.post(
        "/api/v1/bookings",
        json={
            "tailor_id": people["tailor_id"],
            "date": (date.today() + timedelta(days=5)).isoformat(),
            "start_time": "10:00",
            "end_time": "11:00",
            "service": "Linen shirt",
        },
        headers=people["customer"],
    )
    assert booking.status_code == 201, booking.text
    booking_id = booking.json()["data"]["id"]
    base = f"/api/v1/bookings/{booking_id}"

    assert client.put(f"{base}/confirm", headers=people["tailor"]).status_code == 200
    assert client.put(f"{base}/consultation", json={"notes": "Slim fit"}, headers=ADMIN).status_code == 200
    quote = client.put(
        f"{base}/quote",
        json={"items": [{"description": "Linen", "quantity": 2, "unit_price": 20}], "labor_cost": 40},
        headers=people["tailor"],
    )
    assert quote.json()["data"]["quote"]["total_amount"] == 80.0
    assert client.put(f"{base}/quote/accept", headers=people["customer"]).status_code == 200
    return booking_id


def _paid_booking(client, people):
    booking_id = _accepted_booking(client, people)
    paid = client.post(f"/api/v1/bookings/{booking_id}/pay", headers=people["customer"])
    assert paid.status_code == 200, paid.text
    assert paid.json()["data"]["payment_status"] == "held"
    return booking_id


def _order(client, people):
    booking_id = _paid_booking(client, people)
    resp = client.post("/api/v1/orders", json={"booking_id": booking_id}, headers=people["customer"])
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_full_fulfillment_flow(client, people):
    order_id = _order(client, people)
    base = f"/api/v1/orders/{order_id}"

    plan = client.post(
        f"{base}/work-plan",
        json={"stages": [
            {"name": "Cut", "estimated_days": 1},
            {"name": "Sew", "estimated_days": 3},
        ]},
        headers=people["tailor"],
    )
    assert plan.json()["data"]["status"] == "plan_review"
    assert client.put(f"{base}/work-plan/approve", headers=people["customer"]).json()["data"]["status"] == "in_progress"

    client.put(f"{base}/stages/0/complete", json={"note": "Cut done"}, headers=people["tailor"])
    ready = client.put(f"{base}/stages/1/complete", headers=people["tailor"]).json()["data"]
    assert ready["status"] == "ready"
    assert ready["progress_percentage"] == 100

    done = client.put(f"{base}/complete", json={"rating": 4}, headers=people["customer"])
    assert done.status_code == 200
    assert done.json()["data"]["status"] == "completed"

    history = client.get(f"{base}/history", headers=people["customer"]).json()["data"]
    assert [h["status"] for h in history["items"]] == [
        "awaiting_plan", "plan_review", "in_progress", "ready", "completed",
    ]


def test_invalid_transition_is_409_with_code(client, people):
    booking_id = _paid_booking(client, people)
    resp = client.put(f"/api/v1/bookings/{booking_id}/confirm", headers=people["tailor"])
    assert resp.status_code == 409
    assert resp.json() == {"detail": "Cannot move booking from paid to confirmed.", "code": "invalid_transition"}


def test_wrong_party_is_403(client, people):
    booking_id = _paid_booking(client, people)
    resp = client.post("/api/v1/orders", json={"booking_id": booking_id}, headers=people["tailor"])
    assert resp.status_code == 201
    order_id = resp.json()["data"]["id"]
    resp = client.put(f"/api/v1/orders/{order_id}/work-plan/approve", headers=people["tailor"])
    assert resp.status_code == 403
    assert resp.json()["code"] == "unauthorized"


def test_missing_token_is_401(client):
    assert client.get("/api/v1/bookings").status_code == 401
    assert client.get("/api/v1/bookings", headers={"Authorization": "Bearer not-a-uuid"}).status_code == 401


def test_unknown_order_is_404(client, people):
    resp = client.get("/api/v1/orders/6d1f4a8e-0000-4000-8000-000000000000", headers=people["customer"])
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_stage_index_out_of_range_is_422(client, people):
    order_id = _order(client, people)
    base = f"/api/v1/orders/{order_id}"
    client.post(f"{base}/work-plan", json={"stages": [{"name": "Sew", "estimated_days": 2}]}, headers=people["tailor"])
    client.put(f"{base}/work-plan/approve", headers=people["customer"])
    resp = client.put(f"{base}/stages/5/complete", headers=people["tailor"])
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_stage_index"


def test_gateway_failure_is_502(client, people, api_gateway):
    booking_id = _accepted_booking(client, people)
    api_gateway.fail_operations.add("authorize_and_hold")
    resp = client.post(f"/api/v1/bookings/{booking_id}/pay", headers=people["customer"])
    assert resp.status_code == 502
    assert resp.json()["code"] == "payment_gateway_failure"
    booking = client.get(f"/api/v1/bookings/{booking_id}", headers=people["customer"]).json()["data"]
    assert booking["status"] == "quote_accepted"
    assert booking["payment_status"] == "pending"


def test_duplicate_conversion_is_409(client, people):
    booking_id = _paid_booking(client, people)
    client.post("/api/v1/orders", json={"booking_id": booking_id}, headers=people["customer"])
    resp = client.post("/api/v1/orders", json={"booking_id": booking_id}, headers=people["customer"])
    assert resp.status_code == 409
    assert resp.json()["code"] == "order_already_exists"


def test_settings_are_admin_managed(client, people):
    assert client.get("/api/v1/settings").status_code == 401
    listed = client.get("/api/v1/settings", headers=people["customer"]).json()["data"]
    settings = {s["key"]: s["value"] for s in listed}
    assert settings["order_max_plan_revisions"] == 3
    assert settings["order_customer_approval_required"] is True

    assert client.put(
        "/api/v1/settings/order_max_plan_revisions", json={"value": 5}, headers=people["tailor"],
    ).status_code == 403
    resp = client.put("/api/v1/settings/order_max_plan_revisions", json={"value": 5}, headers=ADMIN)
    assert resp.json()["data"] == {"key": "order_max_plan_revisions", "value": 5}
    resp = client.put("/api/v1/settings/order_customer_approval_required", json={"value": 3}, headers=ADMIN)
    assert resp.status_code == 422
    assert client.put("/api/v1/settings/no_such_key", json={"value": 1}, headers=ADMIN).status_code == 404


def test_public_registration_cannot_create_admins(client):
    resp = client.post("/api/v1/users", json={"full_name": "Eve", "email": "eve@evil.io", "role": "admin"})
    assert resp.status_code == 422


def test_notifications_inbox(client, people):
    _paid_booking(client, people)
    inbox = client.get("/api/v1/me/notifications", headers=people["tailor"]).json()["data"]
    templates = {n["template_id"] for n in inbox}
    assert {"booking.requested", "booking.quote_accepted", "booking.paid"} <= templates
