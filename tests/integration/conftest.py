import hashlib
import hmac
import json
import os
import sys
import time

import pytest
from flask import g

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from homecare import create_app
from homecare.extensions import db
from homecare.models.user import User
from homecare.models.request import ServiceRequest
from homecare.notifications.service import NotificationSink
from homecare.payments.processor import Intent, ProcessorError

WEBHOOK_SECRET = "whsec_test_secret"

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key",
    "WTF_CSRF_ENABLED": False,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "SQLALCHEMY_TRACK_MODIFICATIONS": False,
    "STRIPE_SECRET_KEY": "",
    "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "PLATFORM_FEE_RATE": "0.10",
    "PAYMENT_CURRENCY": "egp",
}


def _assert_throwaway_db(uri: str, allowed_dir=None):
    if uri == "sqlite:///:memory:":
        return
    if allowed_dir is not None and uri.startswith(f"sqlite:///{allowed_dir}"):
        return
    raise RuntimeError(
        f"Refusing to run tests on non-test DB: {uri!r}. "
        "This guard protects your real database."
    )


class FakeProcessor:
    """In-memory stand-in for the Stripe API."""

    def __init__(self):
        self.intents = {}
        self.refunds = []
        self.canceled = []
        self.fail = False
        self._seq = 0

    def _maybe_fail(self):
        if self.fail:
            raise ProcessorError("api_connection_error: raw processor detail")

    def create_intent(self, amount, currency, metadata, description=None):
        self._maybe_fail()
        self._seq += 1
        intent_id = f"pi_test_{self._seq}"
        intent = Intent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_abc",
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_intent(self, intent_id):
        self._maybe_fail()
        return self.intents[intent_id]

    def set_status(self, intent_id, status, charge=None, error=None):
        intent = self.intents[intent_id]
        intent.status = status
        intent.latest_charge = charge
        intent.error_message = error

    def cancel_intent(self, intent_id):
        self._maybe_fail()
        self.canceled.append(intent_id)
        self.intents[intent_id].status = "canceled"
        return self.intents[intent_id]

    def create_refund(self, intent_id, amount, metadata=None):
        self._maybe_fail()
        self.refunds.append((intent_id, amount))
        return f"re_test_{len(self.refunds)}"


class ExplodingSink(NotificationSink):
    def __init__(self):
        self.calls = 0

    def notify(self, user_id, type_, payload=None):
        self.calls += 1
        raise RuntimeError("notification backend down")


def _build_app(uri, allowed_dir=None):
    flask_app = create_app(dict(TEST_CONFIG, SQLALCHEMY_DATABASE_URI=uri))
    flask_app.extensions["homecare.payment_processor"] = FakeProcessor()

    @flask_app.before_request
    def _forget_cached_user():
        # test requests share the fixture's app context, so g outlives a request
        g.pop("_login_user", None)

    _assert_throwaway_db(flask_app.config["SQLALCHEMY_DATABASE_URI"], allowed_dir)
    return flask_app


@pytest.fixture(scope="function")
def app():
    os.environ.pop("DATABASE_URL", None)
    flask_app = _build_app("sqlite:///:memory:")

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        _assert_throwaway_db(flask_app.config["SQLALCHEMY_DATABASE_URI"])
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_app(tmp_path):
    """App on an SQLite file, for tests that need real concurrent connections."""
    base = tmp_path.as_posix()
    flask_app = _build_app(f"sqlite:///{base}/race.db", allowed_dir=base)

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def processor(app):
    return app.extensions["homecare.payment_processor"]

@pytest.fixture()
def make_user(app):
    def _make_user(email: str, name: str, role="patient", approved=True):
        u = User(email=email, name=name, role=role, is_approved=approved)
        u.set_password("password123")
        db.session.add(u)
        db.session.commit()
        return u
    return _make_user

@pytest.fixture()
def login_as(client, app):
    def _login_as(user_id: int):
        with client.session_transaction() as sess:
            sess["_user_id"] = str(user_id)
            sess["_fresh"] = True
    return _login_as


@pytest.fixture()
def sample_data(app, make_user):
    patient = make_user("patient@example.com", "Patient P", role="patient")
    nurse1 = make_user("nurse1@example.com", "Nurse N1", role="nurse")
    nurse2 = make_user("nurse2@example.com", "Nurse N2", role="nurse")
    admin = make_user("admin@example.com", "Admin", role="admin")
    stranger = make_user("stranger@example.com", "Stranger", role="patient")

    req = ServiceRequest(
        patient_id=patient.id,
        title="Post-surgery wound care",
        service_type="wound_care",
        address="Cairo",
        latitude=30.04,
        longitude=31.23,
        budget=20000,
        status="pending",
    )
    db.session.add(req)
    db.session.commit()

    return {
        "patient": patient,
        "nurse1": nurse1,
        "nurse2": nurse2,
        "admin": admin,
        "stranger": stranger,
        "request": req,
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.fixture()
def exploding_sink():
    return ExplodingSink()


@pytest.fixture()
def stripe_event():
    def _event(type_: str, obj: dict, event_id: str = "evt_test_1"):
        body = json.dumps({"id": event_id, "type": type_, "data": {"object": obj}})
        return body, sign_payload(body)
    return _event
