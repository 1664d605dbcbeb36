"""Thin wrapper around the Stripe API.

The reconciliation engine only talks to the small interface below, so tests
can hand it a fake and production hands it ``StripeProcessor``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass

import stripe

from ..errors import InvalidSignature


class ProcessorError(Exception):
    """A call to the payment processor failed."""


@dataclass
class Intent:
    id: str
    status: str
    client_secret: str | None = None
    latest_charge: str | None = None
    error_message: str | None = None


def _intent(pi) -> Intent:
    err = getattr(pi, "last_payment_error", None)
    charge = getattr(pi, "latest_charge", None)
    return Intent(
        id=pi.id,
        status=pi.status,
        client_secret=getattr(pi, "client_secret", None),
        latest_charge=getattr(charge, "id", charge),
        error_message=getattr(err, "message", None) if err else None,
    )


class StripeProcessor:
    def __init__(self, api_key: str):
        self.api_key = api_key

    def _key(self) -> str:
        if not self.api_key:
            raise ProcessorError("STRIPE_SECRET_KEY is not configured")
        return self.api_key

    def create_intent(self, amount: int, currency: str, metadata: dict, description: str | None = None) -> Intent:
        try:
            pi = stripe.PaymentIntent.create(
                api_key=self._key(),
                amount=amount,
                currency=currency,
                payment_method_types=["card"],
                description=description,
                metadata={k: str(v) for k, v in metadata.items()},
            )
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc)) from exc
        return _intent(pi)

    def retrieve_intent(self, intent_id: str) -> Intent:
        try:
            pi = stripe.PaymentIntent.retrieve(intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc)) from exc
        return _intent(pi)

    def cancel_intent(self, intent_id: str) -> Intent:
        try:
            pi = stripe.PaymentIntent.cancel(intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc)) from exc
        return _intent(pi)

    def create_refund(self, intent_id: str, amount: int, metadata: dict | None = None) -> str:
        try:
            refund = stripe.Refund.create(
                api_key=self._key(),
                payment_intent=intent_id,
                amount=amount,
                reason="requested_by_customer",
                metadata={k: str(v) for k, v in (metadata or {}).items()},
            )
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc)) from exc
        return refund.id


def verify_webhook(payload: bytes | str, signature: str | None, secret: str, tolerance: int = 300) -> dict:
    """Check the ``Stripe-Signature`` header and return the decoded event."""
    if not secret:
        raise InvalidSignature("Webhook secret not configured.")
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Webhook payload is not valid UTF-8.") from exc
    try:
        stripe.WebhookSignature.verify_header(payload, signature or "", secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(f"Webhook signature verification failed: {exc}") from exc
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise InvalidSignature("Webhook payload is not valid JSON.") from exc
