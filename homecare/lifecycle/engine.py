"""Request / application state machine.

Request:      pending -> in_progress | cancelled | rejected
              in_progress -> completed | cancelled
Application:  pending -> accepted | rejected   (or deleted by its nurse)

Every write that depends on the request still being in a given status is a
conditional UPDATE on ``service_requests.status``. That row is the single
serialization point: of two concurrent accepts only one UPDATE matches, the
other sees zero rows and gets ``Conflict``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from ..extensions import db
from ..models.application import (
    APP_ACCEPTED,
    APP_PENDING,
    APP_REJECTED,
    Application,
)
from ..models.request import (
    REQUEST_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
    ServiceRequest,
)
from ..models.user import ROLE_NURSE, ROLE_PATIENT, User
from ..notifications import service as notifications

logger = logging.getLogger(__name__)

EDITABLE_REQUEST_FIELDS = (
    "title",
    "description",
    "service_type",
    "address",
    "latitude",
    "longitude",
    "scheduled_date",
    "budget",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_bid(price, estimated_time) -> None:
    if price is None or price < 0:
        raise ValidationFailed("Price must be zero or more.")
    if estimated_time is None or estimated_time <= 0:
        raise ValidationFailed("Estimated time must be positive.")


class LifecycleEngine:
    def __init__(self, notifier: notifications.NotificationSink | None = None):
        self.notifier = notifier

    # -- lookups -----------------------------------------------------------

    def _request(self, request_id: int) -> ServiceRequest:
        req = db.session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("Request not found.")
        return req

    def _application(self, application_id: int) -> Application:
        application = db.session.get(Application, application_id)
        if not application:
            raise NotFound("Application not found.")
        return application

    def _notify(self, user_id, type_, req: ServiceRequest, **extra) -> None:
        payload = {
            "relatedEntityId": req.id,
            "relatedEntityType": "request",
            "requestTitle": req.title,
        }
        payload.update(extra)
        notifications.safe_notify(self.notifier, user_id, type_, payload)

    def _reject_pending_applications(self, request_id: int, keep_id: int | None = None) -> list[int]:
        """Flip pending applications of a request to rejected; returns their nurse ids."""
        cond = [Application.request_id == request_id, Application.status == APP_PENDING]
        if keep_id is not None:
            cond.append(Application.id != keep_id)
        nurse_ids = list(db.session.scalars(select(Application.nurse_id).where(*cond)))
        db.session.execute(
            update(Application)
            .where(*cond)
            .values(status=APP_REJECTED, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        return nurse_ids

    # -- requests ----------------------------------------------------------

    def create_request(self, patient: User, **fields) -> ServiceRequest:
        if not patient.is_patient:
            raise Forbidden("Only patients can create service requests.")
        data = {k: v for k, v in fields.items() if k in EDITABLE_REQUEST_FIELDS}
        if not data.get("title") or not data.get("service_type"):
            raise ValidationFailed("Title and service type are required.")
        req = ServiceRequest(patient_id=patient.id, status=STATUS_PENDING, **data)
        db.session.add(req)
        db.session.commit()
        logger.info("Request %s created by patient %s", req.id, patient.id)
        return req

    def get_request(self, request_id: int, actor: User) -> ServiceRequest:
        req = self._request(request_id)
        if actor.is_admin or req.is_participant(actor.id):
            return req
        if actor.is_nurse and req.status == STATUS_PENDING:
            return req
        raise Forbidden("You do not have access to this request.")

    def list_requests(self, actor: User, status: str | None = None) -> list[ServiceRequest]:
        q = ServiceRequest.query
        if actor.is_patient:
            q = q.filter(ServiceRequest.patient_id == actor.id)
        elif actor.is_nurse:
            q = q.filter(
                db.or_(
                    ServiceRequest.status == STATUS_PENDING,
                    ServiceRequest.nurse_id == actor.id,
                )
            )
        elif not actor.is_admin:
            raise Forbidden("Insufficient permissions.")
        if status:
            if status not in REQUEST_STATUSES:
                raise ValidationFailed(f"Unknown status {status!r}.")
            q = q.filter(ServiceRequest.status == status)
        return q.order_by(ServiceRequest.created_at.desc(), ServiceRequest.id.desc()).all()

    def update_request(self, request_id: int, actor: User, **fields) -> ServiceRequest:
        req = self._request(request_id)
        if req.patient_id != actor.id:
            raise Forbidden("You can only update your own requests.")
        values = {k: v for k, v in fields.items() if k in EDITABLE_REQUEST_FIELDS and v is not None}
        if not values:
            return req
        res = db.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == req.id, ServiceRequest.status == STATUS_PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise InvalidState("Only pending requests can be updated.")
        db.session.commit()
        return req

    def cancel_request(self, request_id: int, actor: User, reason: str | None = None) -> ServiceRequest:
        req = self._request(request_id)
        if not (actor.is_admin or req.patient_id == actor.id):
            raise Forbidden("Only the patient or an admin can cancel this request.")
        current = req.status
        if current not in (STATUS_PENDING, STATUS_IN_PROGRESS):
            raise InvalidState("Only pending or in-progress requests can be cancelled.")
        assigned_nurse = req.nurse_id

        res = db.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == req.id, ServiceRequest.status == current)
            .values(
                status=STATUS_CANCELLED,
                nurse_id=None,
                cancelled_at=_now(),
                cancellation_reason=reason or ("Cancelled by admin" if actor.is_admin else None),
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise Conflict("Request status changed, refresh and try again.")
        losers = self._reject_pending_applications(req.id)
        db.session.commit()
        logger.info("Request %s cancelled by user %s (was %s)", req.id, actor.id, current)

        for nurse_id in set(losers) | ({assigned_nurse} if assigned_nurse else set()):
            self._notify(nurse_id, notifications.REQUEST_CANCELLED, req, reason=reason or "")
        return req

    def reject_request(self, request_id: int, actor: User, reason: str | None = None) -> ServiceRequest:
        """Admin moderation: a pending request is taken off the board."""
        if not actor.is_admin:
            raise Forbidden("Only admins can reject requests.")
        req = self._request(request_id)
        if req.status != STATUS_PENDING:
            raise InvalidState("Only pending requests can be rejected.")
        res = db.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == req.id, ServiceRequest.status == STATUS_PENDING)
            .values(status=STATUS_REJECTED, cancellation_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise Conflict("Request is no longer pending.")
        losers = self._reject_pending_applications(req.id)
        db.session.commit()
        logger.info("Request %s rejected by admin %s", req.id, actor.id)

        self._notify(req.patient_id, notifications.REQUEST_DECLINED, req, reason=reason or "")
        for nurse_id in losers:
            self._notify(nurse_id, notifications.REQUEST_REJECTED, req)
        return req

    # -- applications ------------------------------------------------------

    def apply(self, request_id: int, nurse: User, price: int, estimated_time: int) -> Application:
        if not nurse.is_nurse:
            raise Forbidden("Only nurses can apply to requests.")
        _check_bid(price, estimated_time)
        req = self._request(request_id)
        if req.status != STATUS_PENDING:
            raise InvalidState("This request is not accepting applications.")
        existing = Application.query.filter_by(request_id=req.id, nurse_id=nurse.id).first()
        if existing:
            raise Conflict("You have already applied to this request.")

        # Lock the request row while it is still pending so a concurrent
        # accept cannot reject siblings before this application exists.
        res = db.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == req.id, ServiceRequest.status == STATUS_PENDING)
            .values(status=STATUS_PENDING)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise InvalidState("This request is not accepting applications.")

        application = Application(
            request_id=req.id,
            nurse_id=nurse.id,
            price=price,
            estimated_time=estimated_time,
            status=APP_PENDING,
        )
        db.session.add(application)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict("You have already applied to this request.")
        logger.info("Nurse %s applied to request %s (application %s)", nurse.id, req.id, application.id)

        self._notify(
            req.patient_id,
            notifications.REQUEST_APPLICATION,
            req,
            nurseId=nurse.id,
            nurseName=nurse.name or "A nurse",
        )
        return application

    def list_applications(self, request_id: int, actor: User) -> list[Application]:
        req = self._request(request_id)
        if not (actor.is_admin or req.patient_id == actor.id):
            raise Forbidden("You do not have permission to view these applications.")
        return (
            Application.query.filter_by(request_id=req.id)
            .order_by(Application.created_at.desc(), Application.id.desc())
            .all()
        )

    def nurse_applications(self, nurse: User) -> list[Application]:
        if not nurse.is_nurse:
            raise Forbidden("Only nurses can view their applications.")
        return (
            Application.query.filter_by(nurse_id=nurse.id)
            .order_by(Application.created_at.desc(), Application.id.desc())
            .all()
        )

    def accept_application(self, application_id: int, actor: User) -> Application:
        application = self._application(application_id)
        req = self._request(application.request_id)
        if not (actor.is_admin or req.patient_id == actor.id):
            raise Forbidden("You do not have permission to update this application.")
        if req.status != STATUS_PENDING:
            raise Conflict("Request is no longer pending.")
        if application.status != APP_PENDING:
            raise InvalidState("Only pending applications can be accepted.")

        now = _now()
        winner_nurse = application.nurse_id
        cas = db.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == req.id, ServiceRequest.status == STATUS_PENDING)
            .values(nurse_id=winner_nurse, status=STATUS_IN_PROGRESS, accepted_at=now)
            .execution_options(synchronize_session=False)
        )
        if cas.rowcount != 1:
            db.session.rollback()
            logger.info("Accept of application %s lost the race for request %s", application_id, req.id)
            raise Conflict("Request is no longer pending.")

        won = db.session.execute(
            update(Application)
            .where(Application.id == application.id, Application.status == APP_PENDING)
            .values(status=APP_ACCEPTED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if won.rowcount != 1:
            # withdrawn by its nurse in the meantime
            db.session.rollback()
            raise Conflict("Application is no longer pending.")

        losers = self._reject_pending_applications(req.id, keep_id=application.id)
        db.session.commit()
        logger.info(
            "Request %s assigned to nurse %s via application %s; %d siblings rejected",
            req.id, winner_nurse, application.id, len(losers),
        )

        patient_name = req.patient.name if req.patient else "A patient"
        self._notify(winner_nurse, notifications.REQUEST_ACCEPTED, req, patientName=patient_name)
        for nurse_id in losers:
            self._notify(nurse_id, notifications.REQUEST_REJECTED, req, patientName=patient_name)
        return application

    def reject_application(self, application_id: int, actor: User) -> Application:
        application = self._application(application_id)
        req = self._request(application.request_id)
        if not (actor.is_admin or req.patient_id == actor.id):
            raise Forbidden("You do not have permission to update this application.")
        if req.status != STATUS_PENDING:
            raise Conflict("Request is no longer pending.")

        res = db.session.execute(
            update(Application)
            .where(Application.id == application.id, Application.status == APP_PENDING)
            .values(status=APP_REJECTED, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise InvalidState("Only pending applications can be rejected.")
        db.session.commit()
        logger.info("Application %s rejected by user %s", application.id, actor.id)

        self._notify(application.nurse_id, notifications.REQUEST_REJECTED, req)
        return application

    def update_application(
        self, application_id: int, actor: User, price: int, estimated_time: int
    ) -> Application:
        _check_bid(price, estimated_time)
        application = self._application(application_id)
        if not actor.is_nurse or application.nurse_id != actor.id:
            raise Forbidden("You can only update your own applications.")
        res = db.session.execute(
            update(Application)
            .where(Application.id == application.id, Application.status == APP_PENDING)
            .values(price=price, estimated_time=estimated_time, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise InvalidState("Only pending applications can be updated.")
        db.session.commit()
        return application

    def cancel_application(self, application_id: int, actor: User) -> int:
        application = self._application(application_id)
        if not (actor.is_admin or application.nurse_id == actor.id):
            raise Forbidden("You can only cancel your own applications.")
        res = db.session.execute(
            delete(Application)
            .where(Application.id == application.id, Application.status == APP_PENDING)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise InvalidState("Only pending applications can be cancelled.")
        db.session.commit()
        logger.info("Application %s withdrawn by user %s", application_id, actor.id)
        return application_id

    # -- completion --------------------------------------------------------

    def mark_completed(self, request_id: int, actor: User, role: str) -> ServiceRequest:
        """Record one party's completion; the second one flips the request to completed.

        Repeating a call for a role whose flag is already set changes nothing.
        """
        if role not in (ROLE_NURSE, ROLE_PATIENT):
            raise ValidationFailed("Role must be 'nurse' or 'patient'.")
        req = self._request(request_id)
        if role == ROLE_NURSE:
            owner_id, flag, stamp = req.nurse_id, "nurse_completed", "nurse_completed_at"
        else:
            owner_id, flag, stamp = req.patient_id, "patient_completed", "patient_completed_at"
        if owner_id is None or owner_id != actor.id:
            raise Forbidden(f"Only the request's {role} can mark it completed as {role}.")

        if getattr(req, flag):
            return req
        if req.status != STATUS_IN_PROGRESS:
            raise InvalidState("Request must be in progress to be marked as completed.")

        now = _now()
        flag_col = getattr(ServiceRequest, flag)
        res = db.session.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == req.id,
                ServiceRequest.status == STATUS_IN_PROGRESS,
                flag_col.is_(False),
            )
            .values({flag: True, stamp: now})
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            db.session.refresh(req)
            if getattr(req, flag):
                return req
            raise InvalidState("Request must be in progress to be marked as completed.")

        done = db.session.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == req.id,
                ServiceRequest.status == STATUS_IN_PROGRESS,
                ServiceRequest.nurse_completed.is_(True),
                ServiceRequest.patient_completed.is_(True),
            )
            .values(status=STATUS_COMPLETED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        logger.info("Request %s marked completed by %s %s", req.id, role, actor.id)

        if done.rowcount == 1:
            logger.info("Request %s completed", req.id)
            self._notify(req.patient_id, notifications.REQUEST_COMPLETED, req, role=ROLE_PATIENT)
            self._notify(req.nurse_id, notifications.REQUEST_COMPLETED, req, role=ROLE_NURSE)
        return req

    # -- dashboard ---------------------------------------------------------

    def dashboard(self, actor: User) -> dict:
        def count_by_status(*cond) -> dict:
            rows = (
                db.session.query(ServiceRequest.status, func.count(ServiceRequest.id))
                .filter(*cond)
                .group_by(ServiceRequest.status)
                .all()
            )
            counts = {s: 0 for s in REQUEST_STATUSES}
            counts.update({s: n for s, n in rows})
            counts["total"] = sum(n for _, n in rows)
            return counts

        if actor.is_patient:
            return {"requests": count_by_status(ServiceRequest.patient_id == actor.id)}
        if actor.is_nurse:
            stats = count_by_status(ServiceRequest.nurse_id == actor.id)
            assigned = stats[STATUS_IN_PROGRESS] + stats[STATUS_COMPLETED]
            return {
                "requests": stats,
                "openRequests": ServiceRequest.query.filter_by(status=STATUS_PENDING).count(),
                "pendingApplications": Application.query.filter_by(
                    nurse_id=actor.id, status=APP_PENDING
                ).count(),
                "completionRate": (
                    round(stats[STATUS_COMPLETED] * 100 / assigned) if assigned else 0
                ),
            }
        return {
            "requests": count_by_status(),
            "pendingNurses": User.query.filter_by(role=ROLE_NURSE, is_approved=False).count(),
        }


def get_engine() -> LifecycleEngine:
    return LifecycleEngine(notifier=current_app.extensions["homecare.notifier"])
