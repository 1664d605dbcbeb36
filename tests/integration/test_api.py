import pytest

from homecare.extensions import db
from homecare.models.payment import Payment
from homecare.models.request import ServiceRequest
from homecare.models.user import User


@pytest.fixture()
def ids(sample_data):
    # plain ids; ORM objects are detached once a request tears its session down
    return {k: v.id for k, v in sample_data.items()}


def _apply(client, login_as, ids, nurse="nurse1", price=80):
    login_as(ids[nurse])
    r = client.post(
        f"/api/requests/{ids['request']}/applications",
        json={"price": price, "estimatedTime": 2},
    )
    assert r.status_code == 201, r.get_json()
    return r.get_json()["data"]["id"]


def test_index(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_requires_login(client):
    r = client.get("/api/requests")
    assert r.status_code == 401
    assert r.get_json()["error"] == "unauthorized"


def test_register_login_and_me(client):
    r = client.post(
        "/api/auth/register",
        json={"name": "Nour", "email": "Nour@Example.com", "password": "longenough", "role": "nurse"},
    )
    assert r.status_code == 201
    body = r.get_json()["data"]
    assert body["email"] == "nour@example.com"
    assert body["isApproved"] is False

    r = client.get("/api/auth/me")
    assert r.get_json()["data"]["role"] == "nurse"

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401

    r = client.post("/api/auth/login", json={"email": "nour@example.com", "password": "wrong-one"})
    assert r.status_code == 403
    r = client.post("/api/auth/login", json={"email": "nour@example.com", "password": "longenough"})
    assert r.status_code == 200


def test_register_duplicate_email(client, make_user):
    make_user("taken@example.com", "Taken")
    r = client.post(
        "/api/auth/register",
        json={"name": "Other", "email": "taken@example.com", "password": "longenough"},
    )
    assert r.status_code == 409
    assert r.get_json()["error"] == "conflict"


def test_register_validation_errors(client):
    r = client.post("/api/auth/register", json={"name": "X", "email": "not-an-email"})
    assert r.status_code == 422
    fields = r.get_json()["fields"]
    assert "email" in fields
    assert "password" in fields


def test_create_request_accepts_camel_case_and_coordinates(client, login_as, make_user):
    patient_id = make_user("pat@example.com", "Pat").id
    login_as(patient_id)
    r = client.post(
        "/api/requests",
        json={
            "title": "Insulin injections",
            "serviceType": "injection",
            "coordinates": [31.23, 30.04],
            "scheduledDate": "2026-11-01T09:00",
            "budget": 5000,
        },
    )
    assert r.status_code == 201
    data = r.get_json()["data"]
    assert data["status"] == "pending"
    assert data["nurseId"] is None
    assert data["coordinates"] == [31.23, 30.04]
    assert data["scheduledDate"].startswith("2026-11-01T09:00")


def test_nurse_cannot_create_request(client, login_as, ids):
    login_as(ids["nurse1"])
    r = client.post("/api/requests", json={"title": "x", "serviceType": "y"})
    assert r.status_code == 403


def test_apply_validation(client, login_as, ids):
    login_as(ids["nurse1"])
    r = client.post(f"/api/requests/{ids['request']}/applications", json={"price": -5})
    assert r.status_code == 422
    assert set(r.get_json()["fields"]) >= {"price", "estimated_time"}


def test_accept_flow_and_double_accept(client, login_as, ids):
    a1 = _apply(client, login_as, ids, "nurse1", 80)
    a2 = _apply(client, login_as, ids, "nurse2", 90)

    login_as(ids["patient"])
    rows = client.get(f"/api/requests/{ids['request']}/applications").get_json()["data"]
    assert {row["nurse"]["name"] for row in rows} == {"Nurse N1", "Nurse N2"}

    r = client.post(f"/api/applications/{a1}/accept")
    assert r.status_code == 200
    assert r.get_json()["data"]["status"] == "accepted"

    r = client.post(f"/api/applications/{a2}/accept")
    assert r.status_code == 409
    assert r.get_json()["error"] == "conflict"

    req = client.get(f"/api/requests/{ids['request']}").get_json()["data"]
    assert req["status"] == "in_progress"
    assert req["nurseId"] == ids["nurse1"]

    login_as(ids["nurse2"])
    mine = client.get("/api/applications/mine").get_json()["data"]
    assert [m["status"] for m in mine] == ["rejected"]


def test_completion_then_payment_via_webhook(client, login_as, ids, processor, stripe_event):
    a1 = _apply(client, login_as, ids)
    login_as(ids["patient"])
    client.post(f"/api/applications/{a1}/accept")

    login_as(ids["nurse1"])
    r = client.post(f"/api/requests/{ids['request']}/complete")
    assert r.get_json()["data"]["status"] == "in_progress"
    login_as(ids["patient"])
    r = client.post(f"/api/requests/{ids['request']}/complete")
    assert r.get_json()["data"]["status"] == "completed"

    r = client.post(
        "/api/payments/create-intent",
        json={"requestId": ids["request"], "amount": 15000, "paymentMethod": "credit_card"},
    )
    assert r.status_code == 201
    data = r.get_json()["data"]
    assert (data["platformFee"], data["netAmount"]) == (1500, 13500)

    body, sig = stripe_event(
        "payment_intent.succeeded", {"id": data["paymentIntentId"], "latest_charge": "ch_9"}
    )
    r = client.post(
        "/api/webhooks/stripe",
        data=body,
        headers={"Stripe-Signature": sig, "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.get_json()["received"] is True

    r = client.get(f"/api/payments/{data['paymentId']}")
    assert r.get_json()["data"]["status"] == "completed"

    login_as(ids["nurse1"])
    hist = client.get("/api/payments/history").get_json()["data"]
    assert hist["pagination"]["total"] == 1

    login_as(ids["patient"])
    r = client.post(f"/api/payments/{data['paymentId']}/refund", json={"reason": "changed plans"})
    assert r.status_code == 200
    assert r.get_json()["data"]["refundAmount"] == 15000


def test_webhook_rejects_bad_signature(client, ids):
    r = client.post(
        "/api/webhooks/stripe",
        data='{"id": "evt_1", "type": "payment_intent.succeeded"}',
        headers={"Stripe-Signature": "t=1,v1=bad"},
    )
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_signature"


def test_confirm_upstream_error_is_502(client, login_as, ids, processor):
    req = db.session.get(ServiceRequest, ids["request"])
    req.status = "completed"
    req.nurse_id = ids["nurse1"]
    db.session.commit()

    login_as(ids["patient"])
    r = client.post(
        "/api/payments/create-intent",
        json={"requestId": ids["request"], "amount": 1000, "paymentMethod": "debit_card"},
    )
    intent_id = r.get_json()["data"]["paymentIntentId"]

    processor.fail = True
    r = client.post(
        "/api/payments/confirm",
        json={"paymentIntentId": intent_id, "requestId": ids["request"]},
    )
    assert r.status_code == 502
    assert r.get_json()["error"] == "upstream_failure"
    assert "raw processor detail" not in r.get_json()["message"]
    assert Payment.query.filter_by(external_transaction_id=intent_id).one().status == "pending"


def test_notifications_endpoints(client, login_as, ids):
    _apply(client, login_as, ids)
    _apply(client, login_as, ids, "nurse2", 95)

    login_as(ids["patient"])
    assert client.get("/api/notifications/unread-count").get_json()["data"]["count"] == 2

    page = client.get("/api/notifications").get_json()["data"]
    first = page["notifications"][0]
    assert first["type"] == "request_application"

    r = client.post(f"/api/notifications/{first['id']}/read")
    assert r.get_json()["data"]["isRead"] is True
    assert client.get("/api/notifications/unread-count").get_json()["data"]["count"] == 1

    assert client.post("/api/notifications/read-all").get_json()["data"]["modifiedCount"] == 1
    assert client.get("/api/notifications?unread=1").get_json()["data"]["notifications"] == []

    login_as(ids["nurse1"])
    assert client.delete(f"/api/notifications/{first['id']}").status_code == 404


def test_admin_approves_nurse(client, login_as, ids, make_user):
    pending_id = make_user("new@example.com", "New Nurse", role="nurse", approved=False).id

    login_as(ids["patient"])
    assert client.get("/api/admin/nurses/pending").status_code == 403

    login_as(ids["admin"])
    rows = client.get("/api/admin/nurses/pending").get_json()["data"]
    assert [row["id"] for row in rows] == [pending_id]

    r = client.post(f"/api/admin/nurses/{pending_id}/approve")
    assert r.get_json()["data"]["isApproved"] is True
    assert db.session.get(User, pending_id).is_approved is True
    assert client.post(f"/api/admin/nurses/{pending_id}/approve").status_code == 400


def test_reviews_via_http(client, login_as, ids):
    req = db.session.get(ServiceRequest, ids["request"])
    req.status = "completed"
    req.nurse_id = ids["nurse1"]
    db.session.commit()

    login_as(ids["patient"])
    r = client.get(f"/api/reviews/can-review/{ids['request']}?revieweeId={ids['nurse1']}")
    assert r.get_json()["data"]["canReview"] is True

    r = client.post(
        "/api/reviews",
        json={
            "requestId": ids["request"],
            "reviewType": "user_to_user",
            "revieweeId": ids["nurse1"],
            "rating": 4,
        },
    )
    assert r.status_code == 201
    r = client.post(
        "/api/reviews",
        json={
            "requestId": ids["request"],
            "reviewType": "user_to_user",
            "revieweeId": ids["nurse1"],
            "rating": 5,
        },
    )
    assert r.status_code == 409

    stats = client.get(f"/api/reviews/stats/{ids['nurse1']}").get_json()["data"]
    assert stats["totalReviews"] == 1
    assert stats["averageRating"] == 4


def test_dashboard(client, login_as, ids):
    login_as(ids["admin"])
    data = client.get("/api/dashboard").get_json()["data"]
    assert data["requests"]["pending"] == 1


def test_fractional_amounts_are_rejected(client, login_as, ids):
    req = db.session.get(ServiceRequest, ids["request"])
    req.status = "completed"
    req.nurse_id = ids["nurse1"]
    db.session.commit()

    login_as(ids["patient"])
    r = client.post(
        "/api/payments/create-intent",
        json={"requestId": ids["request"], "amount": 15000.9, "paymentMethod": "credit_card"},
    )
    assert r.status_code == 422
    assert "amount" in r.get_json()["fields"]
    assert Payment.query.count() == 0


def test_fractional_bid_is_rejected(client, login_as, ids):
    login_as(ids["nurse1"])
    r = client.post(
        f"/api/requests/{ids['request']}/applications",
        json={"price": 80.5, "estimatedTime": 2.5},
    )
    assert r.status_code == 422
    assert set(r.get_json()["fields"]) >= {"price", "estimated_time"}


def test_webhook_rejects_undecodable_body(client):
    r = client.post(
        "/api/webhooks/stripe",
        data=b'{"id": "evt", "type": "x"}\xff',
        headers={"Stripe-Signature": "t=1,v1=bad"},
    )
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_signature"
