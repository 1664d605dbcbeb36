from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from ..extensions import db
from ..models.request import STATUS_COMPLETED, ServiceRequest
from ..models.review import REVIEW_TYPES, REVIEW_USER_TO_USER, Review
from ..models.user import ROLE_NURSE, ROLE_PATIENT, User
from ..notifications import service as notifications

logger = logging.getLogger(__name__)


class ReviewService:
    def __init__(self, notifier: notifications.NotificationSink | None = None):
        self.notifier = notifier

    def _eligibility(self, request_id, user, review_type, reviewee_id):
        """Return (request, reviewer_role) or raise why ``user`` may not post this review."""
        if review_type not in REVIEW_TYPES:
            raise ValidationFailed(f"Unknown review type {review_type!r}.")
        req = db.session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("Request not found.")
        if req.status != STATUS_COMPLETED:
            raise InvalidState("Can only review completed requests.")

        is_patient = req.patient_id == user.id
        is_nurse = req.nurse_id is not None and req.nurse_id == user.id
        if not (is_patient or is_nurse):
            raise Forbidden("You can only review requests you were involved in.")
        role = ROLE_PATIENT if is_patient else ROLE_NURSE

        if review_type == REVIEW_USER_TO_USER:
            if not reviewee_id:
                raise ValidationFailed("Reviewee ID is required for user-to-user reviews.")
            expected = req.nurse_id if is_patient else req.patient_id
            if expected != reviewee_id:
                raise InvalidState("Invalid reviewee for this request.")
        elif reviewee_id:
            raise ValidationFailed("Reviewee ID should not be provided for service reviews.")

        # NULL reviewee ids never collide in a unique index, so check by hand
        dup = Review.query.filter_by(
            request_id=req.id,
            reviewer_id=user.id,
            review_type=review_type,
            reviewee_id=reviewee_id if review_type == REVIEW_USER_TO_USER else None,
        ).first()
        if dup:
            raise Conflict("You have already submitted this type of review for this request.")
        return req, role

    def create_review(
        self,
        request_id: int,
        reviewer: User,
        review_type: str,
        rating: int,
        feedback: str | None = None,
        reviewee_id: int | None = None,
    ) -> Review:
        if rating is None or not 1 <= rating <= 5:
            raise ValidationFailed("Rating must be between 1 and 5.")
        req, role = self._eligibility(request_id, reviewer, review_type, reviewee_id)

        review = Review(
            request_id=req.id,
            reviewer_id=reviewer.id,
            reviewer_role=role,
            reviewee_id=reviewee_id if review_type == REVIEW_USER_TO_USER else None,
            review_type=review_type,
            rating=rating,
            feedback=feedback,
        )
        db.session.add(review)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict("You have already submitted this type of review for this request.")
        logger.info("Review %s posted on request %s by user %s", review.id, req.id, reviewer.id)

        if review.reviewee_id:
            notifications.safe_notify(
                self.notifier,
                review.reviewee_id,
                notifications.REVIEW_RECEIVED,
                {
                    "relatedEntityId": req.id,
                    "relatedEntityType": "request",
                    "reviewerName": reviewer.name,
                    "rating": rating,
                    "requestTitle": req.title,
                },
            )
        return review

    def can_review(self, request_id, user, review_type, reviewee_id=None) -> tuple[bool, str | None]:
        try:
            self._eligibility(request_id, user, review_type, reviewee_id)
        except (NotFound, Forbidden, InvalidState, Conflict, ValidationFailed) as exc:
            return False, exc.message
        return True, None

    def _own(self, review_id: int, user: User) -> Review:
        review = db.session.get(Review, review_id)
        if not review or not review.is_active:
            raise NotFound("Review not found.")
        if review.reviewer_id != user.id:
            raise Forbidden("You can only change your own reviews.")
        return review

    def update_review(self, review_id, user, rating=None, feedback=None) -> Review:
        review = self._own(review_id, user)
        if rating is not None:
            if not 1 <= rating <= 5:
                raise ValidationFailed("Rating must be between 1 and 5.")
            review.rating = rating
        if feedback is not None:
            review.feedback = feedback
        db.session.commit()
        return review

    def delete_review(self, review_id, user) -> None:
        review = self._own(review_id, user)
        review.is_active = False
        db.session.commit()

    def list_reviews(self, request_id=None, reviewer_id=None, reviewee_id=None,
                     review_type=None, page=1, limit=10) -> dict:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        q = Review.query.filter_by(is_active=True)
        if request_id:
            q = q.filter_by(request_id=request_id)
        if reviewer_id:
            q = q.filter_by(reviewer_id=reviewer_id)
        if reviewee_id:
            q = q.filter_by(reviewee_id=reviewee_id)
        if review_type:
            q = q.filter_by(review_type=review_type)
        total = q.count()
        rows = (
            q.order_by(Review.submitted_at.desc(), Review.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "reviews": [r.to_dict() for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def reviews_for_request(self, request_id: int) -> list[Review]:
        if not db.session.get(ServiceRequest, request_id):
            raise NotFound("Request not found.")
        return (
            Review.query.filter_by(request_id=request_id, is_active=True)
            .order_by(Review.submitted_at.desc())
            .all()
        )

    def stats(self, user_id: int, review_type: str | None = None) -> dict:
        q = Review.query.filter_by(reviewee_id=user_id, is_active=True)
        if review_type:
            q = q.filter_by(review_type=review_type)
        ratings = [r.rating for r in q.all()]
        distribution = {i: 0 for i in range(1, 6)}
        for r in ratings:
            distribution[r] += 1
        return {
            "averageRating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
            "totalReviews": len(ratings),
            "ratingDistribution": distribution,
        }


def get_service() -> ReviewService:
    return ReviewService(notifier=current_app.extensions["homecare.notifier"])

