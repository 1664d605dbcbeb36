"""Stripe webhook events as tagged variants.

Only the fields the reconciliation code reads are pulled out; anything the
engine does not handle becomes ``Unrecognized`` and is acknowledged.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str | None
    intent_id: str
    charge_id: str | None = None
    payment_method: str | None = None
    receipt_url: str | None = None


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str | None
    intent_id: str
    reason: str = "Payment failed"


@dataclass(frozen=True)
class PaymentProcessing:
    event_id: str | None
    intent_id: str


@dataclass(frozen=True)
class DisputeCreated:
    event_id: str | None
    dispute_id: str
    charge_id: str | None
    reason: str | None = None
    status: str | None = None
    amount: int | None = None


@dataclass(frozen=True)
class Unrecognized:
    event_id: str | None
    type: str


def _ref(value):
    # expandable fields arrive either as an id or as the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


def _receipt_url(obj: dict) -> str | None:
    charge = obj.get("latest_charge")
    if isinstance(charge, dict) and charge.get("receipt_url"):
        return charge["receipt_url"]
    charges = (obj.get("charges") or {}).get("data") or []
    if charges:
        return charges[0].get("receipt_url")
    return None


def parse_event(event: dict):
    event_id = event.get("id")
    type_ = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}

    if type_ == "payment_intent.succeeded":
        return PaymentSucceeded(
            event_id=event_id,
            intent_id=obj.get("id"),
            charge_id=_ref(obj.get("latest_charge")),
            payment_method=_ref(obj.get("payment_method")),
            receipt_url=_receipt_url(obj),
        )
    if type_ == "payment_intent.payment_failed":
        err = obj.get("last_payment_error") or {}
        return PaymentFailed(
            event_id=event_id,
            intent_id=obj.get("id"),
            reason=err.get("message") or "Payment failed",
        )
    if type_ == "payment_intent.processing":
        return PaymentProcessing(event_id=event_id, intent_id=obj.get("id"))
    if type_ == "charge.dispute.created":
        return DisputeCreated(
            event_id=event_id,
            dispute_id=obj.get("id"),
            charge_id=_ref(obj.get("charge")),
            reason=obj.get("reason"),
            status=obj.get("status"),
            amount=obj.get("amount"),
        )
    return Unrecognized(event_id=event_id, type=type_)
