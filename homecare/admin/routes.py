import logging

from flask import Blueprint, current_app
from flask_login import login_required
from flask_wtf import FlaskForm
from wtforms import StringField
from wtforms.validators import Length, Optional

from ..api import actor, form_from_json, ok
from ..errors import Forbidden, InvalidState, NotFound
from ..extensions import db
from ..lifecycle.engine import get_engine
from ..models.user import ROLE_NURSE, User
from ..notifications import service as notifications

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


class ReasonForm(FlaskForm):
    reason = StringField("Reason", validators=[Optional(), Length(max=500)])


def _require_admin():
    user = actor()
    if not user.is_admin:
        raise Forbidden("Admin access required.")
    return user


def _nurse_or_404(user_id: int) -> User:
    nurse = db.session.get(User, user_id)
    if not nurse or nurse.role != ROLE_NURSE:
        raise NotFound("Nurse not found.")
    return nurse


@admin_bp.get("/nurses/pending")
@login_required
def pending_nurses():
    _require_admin()
    rows = (
        User.query.filter_by(role=ROLE_NURSE, is_approved=False)
        .order_by(User.created_at.asc())
        .all()
    )
    return ok([u.to_dict() for u in rows])


@admin_bp.post("/nurses/<int:user_id>/approve")
@login_required
def approve_nurse(user_id):
    admin = _require_admin()
    nurse = _nurse_or_404(user_id)
    if nurse.is_approved:
        raise InvalidState("Nurse is already approved.")
    nurse.is_approved = True
    db.session.commit()
    logger.info("Nurse %s approved by admin %s", nurse.id, admin.id)
    notifications.safe_notify(
        current_app.extensions["homecare.notifier"], nurse.id, notifications.NURSE_APPROVED, {}
    )
    return ok(nurse.to_dict())


@admin_bp.post("/nurses/<int:user_id>/reject")
@login_required
def reject_nurse(user_id):
    admin = _require_admin()
    form = form_from_json(ReasonForm)
    nurse = _nurse_or_404(user_id)
    nurse.is_approved = False
    db.session.commit()
    logger.info("Nurse %s rejected by admin %s", nurse.id, admin.id)
    reason = form.reason.data or "Please contact support for more information."
    notifications.safe_notify(
        current_app.extensions["homecare.notifier"],
        nurse.id,
        notifications.NURSE_REJECTED,
        {"reason": reason},
    )
    return ok(nurse.to_dict())


@admin_bp.post("/requests/<int:req_id>/reject")
@login_required
def reject_request(req_id):
    form = form_from_json(ReasonForm)
    req = get_engine().reject_request(req_id, actor(), reason=form.reason.data or None)
    return ok(req.to_dict())
