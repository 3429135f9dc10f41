from typing import Optional

from sqlalchemy import CheckConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from leadbilling.extensions import db
from leadbilling.utils.helpers import iso, utcnow

PAYMENT_PENDING = "pending"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"

KIND_LEAD_FEE = "lead_fee"
KIND_INVOICE = "subscription_invoice"
KIND_REFUND = "refund"


class PaymentAlreadySettled(RuntimeError):
    """A terminal payment record was asked to change."""


class Payment(db.Model):
    """
    One attempted on-demand charge, subscription invoice payment or refund.
    Immutable once terminal: a refund is its own row pointing at the charge.
    """
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True)
    kind = db.Column(db.String(24), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default=text("'usd'"), default="usd")
    status = db.Column(db.String(16), nullable=False, index=True, default=PAYMENT_PENDING, server_default=text("'pending'"))

    stripe_payment_intent_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_invoice_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_refund_id = db.Column(db.String(64), nullable=True)
    refund_of_id = db.Column(db.Integer, db.ForeignKey("payments.id", ondelete="RESTRICT"), nullable=True)
    # Webhook-sourced rows are keyed by event id so redelivery cannot duplicate them
    source_event_id = db.Column(db.String(255), nullable=True, unique=True)

    description = db.Column(db.String(255), nullable=True)
    meta = db.Column(db.JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    settled_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('pending','succeeded','failed')", name="ck_payments_status_valid"),
        CheckConstraint("amount_cents >= 0", name="ck_payments_amount_nonneg"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (PAYMENT_SUCCEEDED, PAYMENT_FAILED)

    def settle(self, status: str, *, payment_intent_id: Optional[str] = None, failure_reason: Optional[str] = None) -> None:
        if self.is_terminal:
            raise PaymentAlreadySettled(f"payment {self.id} already {self.status}")
        if status not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
            raise ValueError(f"not a terminal payment status: {status!r}")
        self.status = status
        if payment_intent_id:
            self.stripe_payment_intent_id = payment_intent_id
        self.failure_reason = (failure_reason or "")[:255] or None
        self.settled_at = utcnow()

    def to_dict(self) -> dict:
        return dict(
            id=self.id,
            kind=self.kind,
            status=self.status,
            amountCents=self.amount_cents,
            currency=self.currency,
            description=self.description,
            invoiceId=self.stripe_invoice_id,
            paymentIntentId=self.stripe_payment_intent_id,
            refundOfId=self.refund_of_id,
            failureReason=self.failure_reason,
            createdAt=iso(self.created_at),
            settledAt=iso(self.settled_at),
        )

    def __repr__(self) -> str:
        return f"<Payment id={self.id} kind={self.kind!r} amount_cents={self.amount_cents} status={self.status!r}>"
