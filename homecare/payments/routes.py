from flask import Blueprint, request
from flask_login import login_required
from flask_wtf import FlaskForm
from wtforms import IntegerField, SelectField, StringField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional

from ..api import actor, form_from_json, json_body, ok, page_args
from ..models.payment import PAYMENT_METHODS
from .engine import get_engine

payments_bp = Blueprint("payments", __name__)
webhooks_bp = Blueprint("webhooks", __name__)


class PaymentIntentForm(FlaskForm):
    request_id = IntegerField("Request", validators=[InputRequired()])
    amount = IntegerField("Amount", validators=[InputRequired(), NumberRange(min=1)])
    currency = StringField("Currency", validators=[Optional(), Length(min=3, max=8)])
    payment_method = SelectField(
        "Payment method", choices=[(m, m) for m in PAYMENT_METHODS], validators=[DataRequired()]
    )
    description = StringField("Description", validators=[Optional(), Length(max=500)])


class ConfirmForm(FlaskForm):
    payment_intent_id = StringField("Payment intent", validators=[DataRequired(), Length(max=255)])
    request_id = IntegerField("Request", validators=[InputRequired()])


class RefundForm(FlaskForm):
    reason = StringField("Reason", validators=[DataRequired(), Length(max=500)])
    amount = IntegerField("Amount", validators=[Optional(), NumberRange(min=1)])


@payments_bp.post("/create-intent")
@login_required
def create_intent():
    form = form_from_json(
        PaymentIntentForm, requestId="request_id", paymentMethod="payment_method"
    )
    metadata = json_body().get("metadata")
    data = get_engine().create_payment_intent(
        form.request_id.data,
        form.amount.data,
        form.payment_method.data,
        actor(),
        currency=form.currency.data or None,
        description=form.description.data or None,
        metadata=metadata if isinstance(metadata, dict) else None,
    )
    return ok(data, 201, message="Payment intent created successfully")


@payments_bp.post("/confirm")
@login_required
def confirm():
    form = form_from_json(
        ConfirmForm, paymentIntentId="payment_intent_id", requestId="request_id"
    )
    payment = get_engine().confirm_payment(
        form.payment_intent_id.data, form.request_id.data, actor()
    )
    return ok(
        {"paymentId": payment.id, "status": payment.status, "amount": payment.amount},
        message="Payment confirmed successfully",
    )


@payments_bp.get("/history")
@login_required
def history():
    page, limit = page_args()
    return ok(get_engine().history(actor(), page=page, limit=limit))


@payments_bp.get("/<int:payment_id>")
@login_required
def get_payment(payment_id):
    return ok(get_engine().get_payment(payment_id, actor()).to_dict())


@payments_bp.post("/<int:payment_id>/refund")
@login_required
def refund(payment_id):
    form = form_from_json(RefundForm)
    data = get_engine().refund_payment(
        payment_id, actor(), reason=form.reason.data, amount=form.amount.data
    )
    return ok(data, message="Payment refunded successfully")


@webhooks_bp.post("/stripe")
def stripe_webhook():
    result = get_engine().handle_webhook_event(
        request.get_data(), request.headers.get("Stripe-Signature")
    )
    return result, 200
