from sqlalchemy import CheckConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from leadbilling.extensions import db
from leadbilling.utils.helpers import utcnow

EVENT_PENDING = "pending"
EVENT_PROCESSING = "processing"
EVENT_PROCESSED = "processed"
EVENT_FAILED = "failed"
TERMINAL_STATUSES = (EVENT_PROCESSED, EVENT_FAILED)

class WebhookEvent(db.Model):
    """Idempotency ledger: one row per Stripe event id, kept forever for audit."""
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    payload = db.Column(db.JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    status = db.Column(db.String(16), nullable=False, index=True, server_default=text("'pending'"))

    # Denormalized for querying
    customer_ref = db.Column(db.String(64), nullable=True, index=True)
    subscription_ref = db.Column(db.String(64), nullable=True, index=True)
    invoice_ref = db.Column(db.String(64), nullable=True, index=True)

    attempts = db.Column(db.Integer, nullable=False, default=1, server_default=text("1"))
    error_message = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    processing_started_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','processed','failed')",
            name="ck_webhook_events_status_valid",
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} ({self.type}) status={self.status!r}>"
