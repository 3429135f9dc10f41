from sqlalchemy import CheckConstraint, text
from leadbilling.extensions import db
from leadbilling.utils.helpers import utcnow

class Subscription(db.Model):
    """Local mirror of one paid Stripe subscription; kept for history, never hard-deleted."""
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True)

    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    tier = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(32), nullable=False, index=True, server_default=text("'active'"))
    monthly_price_cents = db.Column(db.Integer, nullable=True)
    cancel_at = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True, index=True)

    # Creation time (upstream clock) of the last event applied to this row
    last_event_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','past_due','canceled')",
            name="ck_subscriptions_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} account_id={self.account_id} status={self.status!r} tier={self.tier!r}>"
