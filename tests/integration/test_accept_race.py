import threading

import pytest

from homecare.errors import Conflict
from homecare.extensions import db
from homecare.lifecycle.engine import LifecycleEngine
from homecare.models.application import Application
from homecare.models.request import ServiceRequest
from homecare.models.user import User


def _seed(n_nurses):
    patient = User(email="p@example.com", name="P", role="patient", is_approved=True)
    patient.set_password("password123")
    db.session.add(patient)
    db.session.commit()
    req = ServiceRequest(patient_id=patient.id, title="Night care", service_type="elderly_care")
    db.session.add(req)
    db.session.commit()

    engine = LifecycleEngine()
    app_ids = []
    for i in range(n_nurses):
        nurse = User(email=f"n{i}@example.com", name=f"N{i}", role="nurse", is_approved=True)
        nurse.set_password("password123")
        db.session.add(nurse)
        db.session.commit()
        app_ids.append(engine.apply(req.id, nurse, price=100 + i, estimated_time=2).id)
    return patient.id, req.id, app_ids


@pytest.mark.parametrize("n", [2, 5])
def test_concurrent_accepts_have_exactly_one_winner(file_app, n):
    patient_id, req_id, app_ids = _seed(n)
    db.session.remove()

    barrier = threading.Barrier(n)
    outcomes = {}

    def accept(application_id):
        with file_app.app_context():
            patient = db.session.get(User, patient_id)
            engine = LifecycleEngine()
            barrier.wait()
            try:
                engine.accept_application(application_id, patient)
                outcomes[application_id] = "won"
            except Conflict:
                outcomes[application_id] = "conflict"
            finally:
                db.session.remove()

    threads = [threading.Thread(target=accept, args=(a,)) for a in app_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    winners = [a for a, r in outcomes.items() if r == "won"]
    assert len(outcomes) == n
    assert len(winners) == 1
    assert sorted(r for r in outcomes.values() if r != "won") == ["conflict"] * (n - 1)

    req = db.session.get(ServiceRequest, req_id)
    winner = db.session.get(Application, winners[0])
    assert req.status == "in_progress"
    assert req.nurse_id == winner.nurse_id
    statuses = sorted(a.status for a in Application.query.filter_by(request_id=req_id))
    assert statuses == ["accepted"] + ["rejected"] * (n - 1)
