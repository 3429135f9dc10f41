from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, text
from leadbilling.extensions import db
from leadbilling.billing.tiers import Tier
from leadbilling.utils.helpers import utcnow

# Keep simple text+CHECK for evolvable tiers (no DB enum migration pain)
TIER_CHOICES = tuple(t.value for t in Tier)

class Account(db.Model):
    """One per service-provider business. Never deleted; downgraded to free instead."""
    __tablename__ = "accounts"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    billing_email = db.Column(db.String(320), nullable=True)

    tier = db.Column(db.String(20), nullable=False, default=Tier.FREE.value, server_default=Tier.FREE.value)
    tier_expires_at = db.Column(db.DateTime, nullable=True)

    stripe_customer_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)

    # Lead-credit cycle
    credits_used = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    credits_reset_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Dunning
    failed_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    grace_period_end = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "tier IN ('free','basic','pro','enterprise')",
            name="ck_accounts_tier_valid",
        ),
        CheckConstraint("credits_used >= 0", name="ck_accounts_credits_used_nonneg"),
        CheckConstraint("failed_count >= 0", name="ck_accounts_failed_count_nonneg"),
    )

    def effective_tier(self, now: Optional[datetime] = None) -> Tier:
        """Stored tier, collapsed to free once tier_expires_at has passed."""
        now = now or utcnow()
        if self.tier_expires_at is not None and self.tier_expires_at <= now:
            return Tier.FREE
        return Tier.parse(self.tier) or Tier.FREE

    @property
    def has_payment_method(self) -> bool:
        return bool(self.stripe_customer_id)

    def __repr__(self) -> str:
        return f"<Account id={self.id} tier={self.tier!r} credits_used={self.credits_used} failed_count={self.failed_count}>"
