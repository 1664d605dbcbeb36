from flask import Blueprint, request
from flask_login import login_required

from ..api import actor, ok, page_args
from . import service

notifications_bp = Blueprint("notifications", __name__)


@notifications_bp.get("")
@login_required
def list_notifications():
    page, limit = page_args(default_limit=20)
    unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
    return ok(service.list_for_user(actor().id, page=page, limit=limit, unread_only=unread_only))


@notifications_bp.get("/unread-count")
@login_required
def unread_count():
    return ok({"count": service.unread_count(actor().id)})


@notifications_bp.post("/<int:notification_id>/read")
@login_required
def mark_read(notification_id):
    return ok(service.mark_read(notification_id, actor().id).to_dict())


@notifications_bp.post("/read-all")
@login_required
def mark_all_read():
    return ok({"modifiedCount": service.mark_all_read(actor().id)})


@notifications_bp.delete("/<int:notification_id>")
@login_required
def delete_notification(notification_id):
    service.delete(notification_id, actor().id)
    return ok(message="Notification deleted")
