from datetime import datetime, timezone
from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text
from ..extensions import db

REVIEW_USER_TO_USER = "user_to_user"
REVIEW_SERVICE = "service_review"
REVIEW_TYPES = (REVIEW_USER_TO_USER, REVIEW_SERVICE)


class Review(db.Model):
    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)

    request_id = db.Column(
        db.Integer, db.ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    reviewer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reviewer_role = db.Column(db.String(20), nullable=False)
    # empty for service reviews
    reviewee_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    review_type = db.Column(db.String(20), nullable=False)

    rating = db.Column(db.Integer, nullable=False)
    feedback = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    submitted_at = db.Column(db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint(
            "request_id", "reviewer_id", "reviewee_id", "review_type",
            name="uq_review_slot",
        ),
        # NULL reviewees never collide in uq_review_slot
        Index(
            "uq_service_review_slot",
            "request_id", "reviewer_id", "review_type",
            unique=True,
            sqlite_where=text("reviewee_id IS NULL"),
            postgresql_where=text("reviewee_id IS NULL"),
        ),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requestId": self.request_id,
            "reviewerId": self.reviewer_id,
            "reviewerRole": self.reviewer_role,
            "revieweeId": self.reviewee_id,
            "reviewType": self.review_type,
            "rating": self.rating,
            "feedback": self.feedback,
            "isActive": self.is_active,
            "submittedAt": self.submitted_at.isoformat() if self.submitted_at else None,
        }
