from flask import Blueprint, request
from flask_login import login_required
from flask_wtf import FlaskForm
from wtforms import IntegerField, SelectField, TextAreaField
from wtforms.validators import InputRequired, Length, NumberRange, Optional

from ..api import actor, form_from_json, ok, page_args
from ..models.review import REVIEW_TYPES
from .service import get_service

reviews_bp = Blueprint("reviews", __name__)


class ReviewForm(FlaskForm):
    request_id = IntegerField("Request", validators=[InputRequired()])
    reviewee_id = IntegerField("Reviewee", validators=[Optional()])
    review_type = SelectField(
        "Type", choices=[(t, t) for t in REVIEW_TYPES], validators=[InputRequired()]
    )
    rating = IntegerField("Rating", validators=[InputRequired(), NumberRange(1, 5)])
    feedback = TextAreaField("Feedback", validators=[Optional(), Length(max=2000)])


class ReviewUpdateForm(FlaskForm):
    rating = IntegerField("Rating", validators=[Optional(), NumberRange(1, 5)])
    feedback = TextAreaField("Feedback", validators=[Optional(), Length(max=2000)])


REVIEW_ALIASES = {
    "requestId": "request_id",
    "revieweeId": "reviewee_id",
    "reviewType": "review_type",
}


@reviews_bp.post("")
@login_required
def create_review():
    form = form_from_json(ReviewForm, **REVIEW_ALIASES)
    review = get_service().create_review(
        form.request_id.data,
        actor(),
        form.review_type.data,
        form.rating.data,
        feedback=form.feedback.data or None,
        reviewee_id=form.reviewee_id.data,
    )
    return ok(review.to_dict(), 201)


@reviews_bp.get("")
def list_reviews():
    page, limit = page_args()
    return ok(
        get_service().list_reviews(
            request_id=request.args.get("requestId", type=int),
            reviewer_id=request.args.get("reviewerId", type=int),
            reviewee_id=request.args.get("revieweeId", type=int),
            review_type=request.args.get("reviewType"),
            page=page,
            limit=limit,
        )
    )


@reviews_bp.get("/request/<int:req_id>")
def request_reviews(req_id):
    return ok([r.to_dict() for r in get_service().reviews_for_request(req_id)])


@reviews_bp.get("/stats/<int:user_id>")
def review_stats(user_id):
    return ok(get_service().stats(user_id, request.args.get("reviewType")))


@reviews_bp.get("/can-review/<int:req_id>")
@login_required
def can_review(req_id):
    allowed, reason = get_service().can_review(
        req_id,
        actor(),
        request.args.get("reviewType", "user_to_user"),
        request.args.get("revieweeId", type=int),
    )
    return ok({"canReview": allowed, "reason": reason})


@reviews_bp.patch("/<int:review_id>")
@login_required
def update_review(review_id):
    form = form_from_json(ReviewUpdateForm)
    review = get_service().update_review(
        review_id, actor(), rating=form.rating.data, feedback=form.feedback.data
    )
    return ok(review.to_dict())


@reviews_bp.delete("/<int:review_id>")
@login_required
def delete_review(review_id):
    get_service().delete_review(review_id, actor())
    return ok(message="Review deleted successfully")
