from datetime import datetime, timezone
from sqlalchemy import CheckConstraint
from ..extensions import db

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_REJECTED = "rejected"

REQUEST_STATUSES = (
    STATUS_PENDING,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    STATUS_REJECTED,
)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED, STATUS_REJECTED)


class ServiceRequest(db.Model):
    __tablename__ = "service_requests"

    id = db.Column(db.Integer, primary_key=True)

    patient_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # back-reference to the assigned nurse; set only once an application wins
    nurse_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    service_type = db.Column(db.String(64), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=STATUS_PENDING, index=True
    )

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    address = db.Column(db.String(255), nullable=True)
    scheduled_date = db.Column(db.DateTime, nullable=True)
    budget = db.Column(db.Integer, nullable=True)

    accepted_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    nurse_completed = db.Column(db.Boolean, nullable=False, default=False)
    nurse_completed_at = db.Column(db.DateTime, nullable=True)
    patient_completed = db.Column(db.Boolean, nullable=False, default=False)
    patient_completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.String(500), nullable=True)

    created_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint("budget IS NULL OR budget >= 0", name="ck_request_budget"),
    )

    patient = db.relationship("User", foreign_keys=[patient_id])
    nurse = db.relationship("User", foreign_keys=[nurse_id])

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.patient_id, self.nurse_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "nurseId": self.nurse_id,
            "title": self.title,
            "description": self.description,
            "serviceType": self.service_type,
            "status": self.status,
            "coordinates": (
                [self.longitude, self.latitude]
                if self.latitude is not None and self.longitude is not None
                else None
            ),
            "address": self.address,
            "scheduledDate": _iso(self.scheduled_date),
            "budget": self.budget,
            "acceptedAt": _iso(self.accepted_at),
            "completedAt": _iso(self.completed_at),
            "nurseCompleted": self.nurse_completed,
            "nurseCompletedAt": _iso(self.nurse_completed_at),
            "patientCompleted": self.patient_completed,
            "patientCompletedAt": _iso(self.patient_completed_at),
            "cancelledAt": _iso(self.cancelled_at),
            "cancellationReason": self.cancellation_reason,
            "createdAt": _iso(self.created_at),
        }


def _iso(dt):
    return dt.isoformat() if dt else None
