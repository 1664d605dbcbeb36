"""User-facing alerts.

The lifecycle and payment services only ever see ``NotificationSink.notify``;
they call it after their own commit and never let a failure here escape.
The rest of this module is the read side used by the notifications blueprint.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from ..errors import NotFound
from ..extensions import db
from ..models.notification import Notification

logger = logging.getLogger(__name__)

REQUEST_APPLICATION = "request_application"
REQUEST_ACCEPTED = "request_accepted"
REQUEST_REJECTED = "request_rejected"
REQUEST_COMPLETED = "request_completed"
REQUEST_CANCELLED = "request_cancelled"
REQUEST_DECLINED = "request_declined"
REVIEW_RECEIVED = "review_received"
NURSE_APPROVED = "nurse_approved"
NURSE_REJECTED = "nurse_rejected"
PAYMENT_COMPLETED = "payment_completed"
PAYMENT_FAILED = "payment_failed"

_TEMPLATES = {
    REQUEST_APPLICATION: (
        "New Application Received",
        '{nurseName} has applied to your request "{requestTitle}".',
    ),
    REQUEST_ACCEPTED: (
        "Request Accepted",
        '{patientName} has accepted your application for "{requestTitle}".',
    ),
    REQUEST_REJECTED: (
        "Application Declined",
        'Your application for "{requestTitle}" was not selected.',
    ),
    REQUEST_COMPLETED: (
        "Request Completed",
        'The request "{requestTitle}" has been completed. You can now leave a review.',
    ),
    REQUEST_CANCELLED: (
        "Request Cancelled",
        'The request "{requestTitle}" was cancelled. {reason}',
    ),
    REQUEST_DECLINED: (
        "Request Declined",
        'Your request "{requestTitle}" was declined by an administrator. {reason}',
    ),
    REVIEW_RECEIVED: (
        "New Review Received",
        '{reviewerName} left you a {rating}-star review for "{requestTitle}".',
    ),
    NURSE_APPROVED: (
        "Application Approved",
        "Your nurse account has been approved. You can now apply to patient requests.",
    ),
    NURSE_REJECTED: (
        "Application Rejected",
        "Your nurse account was not approved. {reason}",
    ),
    PAYMENT_COMPLETED: (
        "Payment Completed",
        'Payment for "{requestTitle}" was completed.',
    ),
    PAYMENT_FAILED: (
        "Payment Failed",
        'Payment for "{requestTitle}" failed: {reason}',
    ),
}


class _Defaults(dict):
    def __missing__(self, key):
        return ""


def render(type_: str, payload: dict) -> tuple[str, str]:
    title, template = _TEMPLATES.get(type_, (type_.replace("_", " ").title(), ""))
    return title, template.format_map(_Defaults(payload)).strip()


class NotificationSink(ABC):
    """Delivery channel for user alerts."""

    @abstractmethod
    def notify(self, user_id: int, type_: str, payload: dict | None = None) -> None:
        """Deliver one alert. May raise; callers go through ``safe_notify``."""


class LoggingNotificationSink(NotificationSink):
    def notify(self, user_id, type_, payload=None):
        logger.info("notify user=%s type=%s payload=%s", user_id, type_, payload)


class DatabaseNotificationSink(NotificationSink):
    """Stores one Notification row per call, in its own commit."""

    def notify(self, user_id, type_, payload=None):
        payload = dict(payload or {})
        title, message = render(type_, payload)
        n = Notification(
            user_id=user_id,
            type=type_,
            title=title,
            message=message,
            related_entity_id=payload.get("relatedEntityId"),
            related_entity_type=payload.get("relatedEntityType"),
            payload=payload,
        )
        try:
            db.session.add(n)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def safe_notify(sink: NotificationSink | None, user_id, type_, payload=None) -> None:
    """Deliver and forget; errors are logged, never raised."""
    if sink is None or user_id is None:
        return
    try:
        sink.notify(user_id, type_, payload or {})
    except Exception:
        logger.exception("Notification %s to user %s failed", type_, user_id)


def list_for_user(user_id: int, page: int = 1, limit: int = 20, unread_only: bool = False) -> dict:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    q = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        q = q.filter_by(is_read=False)
    total = q.count()
    rows = (
        q.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "notifications": [n.to_dict() for n in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def unread_count(user_id: int) -> int:
    return Notification.query.filter_by(user_id=user_id, is_read=False).count()


def _owned(notification_id: int, user_id: int) -> Notification:
    n = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if not n:
        raise NotFound("Notification not found.")
    return n


def mark_read(notification_id: int, user_id: int) -> Notification:
    n = _owned(notification_id, user_id)
    if not n.is_read:
        n.is_read = True
        n.read_at = datetime.now(timezone.utc)
        db.session.commit()
    return n


def mark_all_read(user_id: int) -> int:
    count = Notification.query.filter_by(user_id=user_id, is_read=False).update(
        {"is_read": True, "read_at": datetime.now(timezone.utc)},
        synchronize_session=False,
    )
    db.session.commit()
    return count


def delete(notification_id: int, user_id: int) -> None:
    n = _owned(notification_id, user_id)
    db.session.delete(n)
    db.session.commit()


def cleanup(days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    deleted = Notification.query.filter(
        Notification.is_read.is_(True), Notification.created_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    logger.info("Removed %d read notifications older than %d days", deleted, days)
    return deleted
