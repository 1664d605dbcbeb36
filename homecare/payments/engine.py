"""Payment records and their reconciliation against Stripe.

A Payment row can be moved by two paths: the patient's confirm call and the
asynchronous webhook. Both only ever *set* fields to what the processor
reports, so replays and reordering converge on the processor's state.
Refunded is terminal for both paths.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    Conflict,
    Forbidden,
    InvalidState,
    NotFound,
    UpstreamFailure,
    ValidationFailed,
)
from ..extensions import db
from ..models.payment import (
    CHARGED_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    PAYMENT_TYPE_SERVICE,
    Payment,
)
from ..models.request import STATUS_COMPLETED, ServiceRequest
from ..models.user import User
from ..notifications import service as notifications
from .events import (
    DisputeCreated,
    PaymentFailed,
    PaymentProcessing,
    PaymentSucceeded,
    Unrecognized,
    parse_event,
)
from .processor import ProcessorError, verify_webhook

logger = logging.getLogger(__name__)

# intents the client can still complete; anything else is retired before a new one
REUSABLE_INTENT_STATUSES = (
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def compute_fees(amount: int, rate) -> tuple[int, int]:
    """Split a gross amount into (platform_fee, net_amount), rounding half up."""
    fee = int((Decimal(amount) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return fee, amount - fee


class PaymentEngine:
    def __init__(
        self,
        processor,
        notifier: notifications.NotificationSink | None = None,
        webhook_secret: str = "",
        fee_rate="0.10",
        currency: str = "egp",
        webhook_tolerance: int = 300,
    ):
        self.processor = processor
        self.notifier = notifier
        self.webhook_secret = webhook_secret
        self.fee_rate = Decimal(str(fee_rate))
        self.currency = currency
        self.webhook_tolerance = webhook_tolerance

    def _notify_parties(self, payment: Payment, type_: str, **extra) -> None:
        req = db.session.get(ServiceRequest, payment.request_id)
        payload = {
            "relatedEntityId": payment.id,
            "relatedEntityType": "payment",
            "requestTitle": req.title if req else "",
            "amount": payment.amount,
            "currency": payment.currency,
        }
        payload.update(extra)
        for user_id in (payment.patient_id, payment.nurse_id):
            notifications.safe_notify(self.notifier, user_id, type_, payload)

    # -- state setters shared by confirm and webhook paths ------------------

    def _set_completed(self, payment: Payment, **meta) -> bool:
        """Returns True when the row actually moved to completed."""
        if payment.status == PAYMENT_REFUNDED:
            logger.info("Payment %s already refunded; ignoring success", payment.id)
            return False
        changed = payment.status != PAYMENT_COMPLETED
        payment.status = PAYMENT_COMPLETED
        if changed or payment.processed_at is None:
            payment.processed_at = _now()
        payment.failed_at = None
        payment.failure_reason = None
        if meta:
            payment.merge_meta(**meta)
        return changed

    def _set_failed(self, payment: Payment, reason: str) -> bool:
        if payment.status == PAYMENT_REFUNDED:
            logger.info("Payment %s already refunded; ignoring failure", payment.id)
            return False
        changed = payment.status != PAYMENT_FAILED
        payment.status = PAYMENT_FAILED
        if changed or payment.failed_at is None:
            payment.failed_at = _now()
        payment.failure_reason = reason[:500]
        return changed

    # -- operations ---------------------------------------------------------

    def create_payment_intent(
        self,
        request_id: int,
        amount: int,
        payment_method: str,
        actor: User,
        currency: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        if amount is None or amount < 1:
            raise ValidationFailed("Amount must be at least 1.")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationFailed(f"Unknown payment method {payment_method!r}.")
        currency = (currency or self.currency).lower()

        req = db.session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("Request not found.")
        if not actor.is_patient or req.patient_id != actor.id:
            raise Forbidden("You can only pay for your own requests.")
        if req.status != STATUS_COMPLETED:
            raise InvalidState("Payment can only be made for completed requests.")
        existing = Payment.query.filter(
            Payment.request_id == req.id, Payment.status.in_(CHARGED_STATUSES)
        ).first()
        if existing:
            raise InvalidState("Payment already exists for this request.")

        reused = self._reuse_or_retire(req.id, amount, currency, payment_method)
        if reused is not None:
            return reused

        fee, net = compute_fees(amount, self.fee_rate)
        extra = dict(metadata or {})
        try:
            intent = self.processor.create_intent(
                amount=amount,
                currency=currency,
                description=description or f"Payment for nursing service - Request {req.id}",
                metadata={
                    **extra,
                    "requestId": req.id,
                    "patientId": actor.id,
                    "nurseId": req.nurse_id or "",
                    "platformFee": fee,
                },
            )
        except ProcessorError:
            logger.exception("Failed to create payment intent for request %s", req.id)
            raise UpstreamFailure("Failed to create payment intent.")

        payment = Payment(
            patient_id=actor.id,
            nurse_id=req.nurse_id,
            request_id=req.id,
            amount=amount,
            currency=currency,
            status=PAYMENT_PENDING,
            payment_method=payment_method,
            payment_type=PAYMENT_TYPE_SERVICE,
            payment_provider="stripe",
            external_transaction_id=intent.id,
            platform_fee=fee,
            net_amount=net,
            description=description,
            meta={**extra, "stripePaymentIntentId": intent.id},
        )
        db.session.add(payment)
        try:
            db.session.commit()
        except IntegrityError:
            # a concurrent call opened an intent for this request first
            db.session.rollback()
            self._cancel_quietly(intent.id)
            raise Conflict("A payment for this request is already in progress.")
        logger.info("Payment intent %s created for request %s", intent.id, req.id)
        return self._intent_result(payment, intent.client_secret)

    @staticmethod
    def _intent_result(payment: Payment, client_secret: str | None) -> dict:
        return {
            "paymentId": payment.id,
            "clientSecret": client_secret,
            "paymentIntentId": payment.external_transaction_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "platformFee": payment.platform_fee,
            "netAmount": payment.net_amount,
        }

    def _cancel_quietly(self, intent_id: str) -> None:
        try:
            self.processor.cancel_intent(intent_id)
        except ProcessorError:
            logger.exception("Could not cancel orphaned payment intent %s", intent_id)

    def _reuse_or_retire(self, request_id: int, amount: int, currency: str, payment_method: str):
        """Hand back a matching open intent, or cancel every earlier one that could still charge.

        Returns the intent result to reuse, or None when a new intent is needed.
        """
        stale = (
            Payment.query.filter(
                Payment.request_id == request_id,
                Payment.status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
            )
            .order_by(Payment.id.asc())
            .all()
        )
        for payment in stale:
            if (payment.meta or {}).get("stripeCanceled"):
                continue
            try:
                intent = self.processor.retrieve_intent(payment.external_transaction_id)
            except ProcessorError:
                logger.exception("Failed to retrieve payment intent %s", payment.external_transaction_id)
                raise UpstreamFailure("Failed to create payment intent.")

            if intent.status == "succeeded":
                changed = self._set_completed(payment, stripeChargeId=intent.latest_charge)
                db.session.commit()
                if changed:
                    self._notify_parties(payment, notifications.PAYMENT_COMPLETED)
                raise InvalidState("Payment already exists for this request.")
            if intent.status == "processing":
                raise InvalidState("A payment for this request is already processing.")

            if (
                payment.status == PAYMENT_PENDING
                and intent.status in REUSABLE_INTENT_STATUSES
                and payment.amount == amount
                and payment.currency == currency
                and payment.payment_method == payment_method
            ):
                logger.info("Reusing payment intent %s for request %s", intent.id, request_id)
                return self._intent_result(payment, intent.client_secret)

            if intent.status != "canceled":
                try:
                    self.processor.cancel_intent(payment.external_transaction_id)
                except ProcessorError:
                    logger.exception("Failed to cancel payment intent %s", payment.external_transaction_id)
                    raise UpstreamFailure("Failed to create payment intent.")
            if payment.status == PAYMENT_PENDING:
                self._set_failed(payment, "Superseded by a new payment intent.")
            payment.merge_meta(stripeCanceled=True)
            db.session.commit()
            logger.info("Payment intent %s cancelled for request %s", payment.external_transaction_id, request_id)
        return None

    def confirm_payment(self, external_transaction_id: str, request_id: int, actor: User) -> Payment:
        payment = Payment.query.filter_by(
            external_transaction_id=external_transaction_id,
            request_id=request_id,
            patient_id=actor.id,
        ).first()
        if not payment:
            raise NotFound("Payment not found.")

        try:
            intent = self.processor.retrieve_intent(external_transaction_id)
        except ProcessorError:
            logger.exception("Failed to retrieve payment intent %s", external_transaction_id)
            raise UpstreamFailure("Failed to confirm payment.")

        if intent.status == "succeeded":
            changed = self._set_completed(payment, stripeChargeId=intent.latest_charge)
            db.session.commit()
            logger.info("Payment %s confirmed (%s)", payment.id, external_transaction_id)
            if changed:
                self._notify_parties(payment, notifications.PAYMENT_COMPLETED)
            return payment

        reason = intent.error_message or f"Payment not successful. Status: {intent.status}"
        changed = self._set_failed(payment, reason)
        db.session.commit()
        logger.warning("Payment %s not successful: %s", payment.id, reason)
        if changed:
            self._notify_parties(payment, notifications.PAYMENT_FAILED, reason=reason)
        raise UpstreamFailure("Payment not successful.")

    def handle_webhook_event(self, raw_payload, signature_header: str | None) -> dict:
        event = verify_webhook(
            raw_payload, signature_header, self.webhook_secret, self.webhook_tolerance
        )
        parsed = parse_event(event)
        logger.info("Received Stripe webhook %s (%s)", event.get("type"), parsed.event_id)

        if isinstance(parsed, PaymentSucceeded):
            matched = self._on_succeeded(parsed)
        elif isinstance(parsed, PaymentFailed):
            matched = self._on_failed(parsed)
        elif isinstance(parsed, PaymentProcessing):
            matched = self._on_processing(parsed)
        elif isinstance(parsed, DisputeCreated):
            matched = self._on_dispute(parsed)
        else:
            logger.info("Unhandled event type: %s", parsed.type)
            matched = False
        return {"received": True, "type": event.get("type"), "matched": matched}

    def _by_intent(self, intent_id: str | None) -> Payment | None:
        payment = None
        if intent_id:
            payment = Payment.query.filter_by(external_transaction_id=intent_id).first()
        if payment is None:
            logger.warning("Payment not found for PaymentIntent: %s", intent_id)
        return payment

    def _on_succeeded(self, ev: PaymentSucceeded) -> bool:
        payment = self._by_intent(ev.intent_id)
        if payment is None:
            return False
        changed = self._set_completed(
            payment,
            stripeChargeId=ev.charge_id,
            stripePaymentMethod=ev.payment_method,
            stripeReceiptUrl=ev.receipt_url,
        )
        db.session.commit()
        logger.info("Payment %s marked as completed", payment.id)
        if changed:
            self._notify_parties(payment, notifications.PAYMENT_COMPLETED)
        return True

    def _on_failed(self, ev: PaymentFailed) -> bool:
        payment = self._by_intent(ev.intent_id)
        if payment is None:
            return False
        changed = self._set_failed(payment, ev.reason)
        db.session.commit()
        logger.info("Payment %s marked as failed", payment.id)
        if changed:
            self._notify_parties(payment, notifications.PAYMENT_FAILED, reason=ev.reason)
        return True

    def _on_processing(self, ev: PaymentProcessing) -> bool:
        payment = self._by_intent(ev.intent_id)
        if payment is None:
            return False
        # a late "processing" must not undo a final outcome
        if payment.status == PAYMENT_PENDING:
            payment.status = PAYMENT_PROCESSING
            db.session.commit()
            logger.info("Payment %s is processing", payment.id)
        return True

    def _on_dispute(self, ev: DisputeCreated) -> bool:
        payment = None
        if ev.charge_id:
            payment = Payment.query.filter(
                Payment.meta["stripeChargeId"].as_string() == ev.charge_id
            ).first()
        if payment is None:
            logger.warning("Payment not found for disputed charge: %s", ev.charge_id)
            return False
        payment.merge_meta(
            disputeId=ev.dispute_id,
            disputeReason=ev.reason,
            disputeStatus=ev.status,
            disputeAmount=ev.amount,
        )
        db.session.commit()
        logger.info("Payment %s updated with dispute %s", payment.id, ev.dispute_id)
        return True

    def refund_payment(
        self, payment_id: int, actor: User, reason: str, amount: int | None = None
    ) -> dict:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            raise NotFound("Payment not found.")
        if not (actor.is_admin or payment.patient_id == actor.id):
            raise Forbidden("You do not have permission to refund this payment.")
        if payment.status != PAYMENT_COMPLETED:
            raise InvalidState("Only completed payments can be refunded.")
        refund_amount = payment.amount if amount is None else amount
        if refund_amount < 1 or refund_amount > payment.amount:
            raise ValidationFailed("Refund amount must be between 1 and the paid amount.")

        # claim the row before money moves; a concurrent refund matches zero rows
        claim = db.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PAYMENT_COMPLETED)
            .values(
                status=PAYMENT_REFUNDED,
                refunded_at=_now(),
                refund_amount=refund_amount,
                refund_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            db.session.rollback()
            raise InvalidState("Only completed payments can be refunded.")
        db.session.commit()
        external_id = payment.external_transaction_id

        try:
            refund_id = self.processor.create_refund(
                external_id,
                refund_amount,
                metadata={"paymentId": payment.id, "reason": reason},
            )
        except ProcessorError:
            logger.exception("Failed to refund payment %s", payment.id)
            db.session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PAYMENT_REFUNDED)
                .values(
                    status=PAYMENT_COMPLETED,
                    refunded_at=None,
                    refund_amount=None,
                    refund_reason=None,
                )
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
            raise UpstreamFailure("Failed to process refund.")

        payment.merge_meta(stripeRefundId=refund_id)
        db.session.commit()
        logger.info("Payment %s refunded: %s", payment.id, refund_amount)
        return {
            "paymentId": payment.id,
            "refundId": refund_id,
            "refundAmount": refund_amount,
            "status": payment.status,
        }

    # -- reads ----------------------------------------------------------------

    def history(self, actor: User, page: int = 1, limit: int = 10) -> dict:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        q = Payment.query
        if actor.is_patient:
            q = q.filter(Payment.patient_id == actor.id)
        elif actor.is_nurse:
            q = q.filter(Payment.nurse_id == actor.id)
        elif not actor.is_admin:
            raise Forbidden("Insufficient permissions.")
        total = q.count()
        rows = (
            q.order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "payments": [p.to_dict() for p in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def get_payment(self, payment_id: int, actor: User) -> Payment:
        payment = db.session.get(Payment, payment_id)
        if not payment:
            raise NotFound("Payment not found.")
        if not (actor.is_admin or actor.id in (payment.patient_id, payment.nurse_id)):
            raise Forbidden("You do not have permission to view this payment.")
        return payment


def get_engine() -> PaymentEngine:
    cfg = current_app.config
    return PaymentEngine(
        processor=current_app.extensions["homecare.payment_processor"],
        notifier=current_app.extensions["homecare.notifier"],
        webhook_secret=cfg.get("STRIPE_WEBHOOK_SECRET", ""),
        fee_rate=cfg.get("PLATFORM_FEE_RATE", "0.10"),
        currency=cfg.get("PAYMENT_CURRENCY", "egp"),
        webhook_tolerance=cfg.get("STRIPE_WEBHOOK_TOLERANCE", 300),
    )
