from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, UniqueConstraint

from ..extensions import db

APP_PENDING = "pending"
APP_ACCEPTED = "accepted"
APP_REJECTED = "rejected"


class Application(db.Model):
    __tablename__ = "applications"

    id = db.Column(db.Integer, primary_key=True)

    request_id = db.Column(
        db.Integer, db.ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    nurse_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True
    )

    price = db.Column(db.Integer, nullable=False)
    estimated_time = db.Column(db.Integer, nullable=False)  # hours

    status = db.Column(db.String(20), nullable=False, default=APP_PENDING, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("request_id", "nurse_id", name="uq_application_request_nurse"),
        CheckConstraint("price >= 0", name="ck_application_price"),
        CheckConstraint("estimated_time > 0", name="ck_application_time"),
    )

    service_request = db.relationship(
        "ServiceRequest", backref=db.backref("applications", lazy="dynamic")
    )
    nurse = db.relationship("User", foreign_keys=[nurse_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requestId": self.request_id,
            "nurseId": self.nurse_id,
            "price": self.price,
            "estimatedTime": self.estimated_time,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
