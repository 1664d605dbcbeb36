from __future__ import annotations

from datetime import datetime, timedelta, timezone

import click
from flask import current_app

from .extensions import db

from .models.user import User, ROLE_ADMIN, ROLE_NURSE, ROLE_PATIENT
from .models.request import ServiceRequest
from .models.application import Application
from .models.review import Review
from .models.payment import Payment
from .models.notification import Notification
from .notifications import service as notifications


def _db_uri() -> str:
    return current_app.config.get("SQLALCHEMY_DATABASE_URI", "")

@click.command("init-db")
def init_db_cmd():
    uri = _db_uri()
    click.echo(f"Creating tables on DB: {uri}")
    db.create_all()
    click.echo("Tables created.")

@click.command("reset-db")
@click.option("--force", is_flag=True, help="Drop + create (irreversible).")
def reset_db_cmd(force: bool):
    uri = _db_uri()
    if not force:
        click.echo("Add --force to confirm dropping all tables.")
        return
    click.echo(f"Dropping & creating tables on DB: {uri}")
    db.drop_all()
    db.create_all()
    click.echo("Database reset.")

@click.command("purge-data")
def purge_data_cmd():
    # children first
    for model in (Notification, Payment, Review, Application, ServiceRequest, User):
        db.session.query(model).delete()
    db.session.commit()
    click.echo("All data removed (schema kept).")


def _user(email: str, name: str, role: str, password: str = "demo1234") -> User:
    u = User(email=email, name=name, role=role, is_approved=True)
    u.set_password(password)
    db.session.add(u)
    return u

@click.command("seed-demo")
def seed_demo_cmd():
    if User.query.filter_by(email="patient@example.com").first():
        click.echo("Demo data already present.")
        return
    patient = _user("patient@example.com", "Demo Patient", ROLE_PATIENT)
    _user("nurse1@example.com", "Nurse Salma", ROLE_NURSE)
    _user("nurse2@example.com", "Nurse Omar", ROLE_NURSE)
    _user("admin@example.com", "Admin", ROLE_ADMIN)
    db.session.commit()

    req = ServiceRequest(
        patient_id=patient.id,
        title="Wound dressing after surgery",
        description="Daily dressing change for one week.",
        service_type="wound_care",
        address="12 Tahrir St, Cairo",
        latitude=30.0444,
        longitude=31.2357,
        scheduled_date=datetime.now(timezone.utc) + timedelta(days=1),
        budget=15000,
    )
    db.session.add(req)
    db.session.commit()

    click.echo("Seed done. Users: patient@ / nurse1@ / nurse2@ / admin@example.com (password: demo1234)")

@click.command("cleanup-notifications")
@click.option("--days", type=int, default=None, help="Age in days (default from config).")
def cleanup_notifications_cmd(days: int | None):
    days = days if days is not None else current_app.config["NOTIFICATION_RETENTION_DAYS"]
    deleted = notifications.cleanup(days)
    click.echo(f"Deleted {deleted} read notifications older than {days} days.")
