from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Index, text

from ..extensions import db

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

# statuses that count as "this request is paid or being paid"
CHARGED_STATUSES = (PAYMENT_COMPLETED, PAYMENT_PROCESSING)

PAYMENT_METHODS = ("credit_card", "debit_card", "digital_wallet")
PAYMENT_TYPE_SERVICE = "service_payment"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)

    patient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    nurse_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    request_id = db.Column(
        db.Integer, db.ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False, index=True
    )

    # smallest currency unit (piastres for EGP)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="egp")
    status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=False)
    payment_type = db.Column(db.String(32), nullable=False, default=PAYMENT_TYPE_SERVICE)
    payment_provider = db.Column(db.String(32), nullable=False, default="stripe")
    description = db.Column(db.String(500), nullable=True)

    external_transaction_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    platform_fee = db.Column(db.Integer, nullable=False)
    net_amount = db.Column(db.Integer, nullable=False)

    processed_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    failure_reason = db.Column(db.String(500), nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    refund_amount = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.String(500), nullable=True)

    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount"),
        CheckConstraint("platform_fee >= 0", name="ck_payment_fee"),
        # one open intent per request
        Index(
            "uq_payment_open_per_request",
            "request_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    def merge_meta(self, **fields) -> None:
        # JSON columns only notice reassignment, not in-place edits
        merged = dict(self.meta or {})
        merged.update({k: v for k, v in fields.items() if v is not None})
        self.meta = merged

    def to_dict(self) -> dict:
        def iso(dt):
            return dt.isoformat() if dt else None

        return {
            "id": self.id,
            "patientId": self.patient_id,
            "nurseId": self.nurse_id,
            "requestId": self.request_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "paymentType": self.payment_type,
            "externalTransactionId": self.external_transaction_id,
            "platformFee": self.platform_fee,
            "netAmount": self.net_amount,
            "processedAt": iso(self.processed_at),
            "failedAt": iso(self.failed_at),
            "failureReason": self.failure_reason,
            "refundedAt": iso(self.refunded_at),
            "refundAmount": self.refund_amount,
            "refundReason": self.refund_reason,
            "metadata": self.meta or {},
            "createdAt": iso(self.created_at),
        }
