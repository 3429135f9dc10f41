"""Immutable snapshots the resolver and grace monitor compute over."""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from .tiers import SubscriptionStatus, Tier


@dataclass(frozen=True)
class Policy:
    max_failures: int = 3
    grace_period: timedelta = timedelta(days=7)

    @classmethod
    def from_config(cls, cfg) -> "Policy":
        return cls(
            max_failures=int(cfg.get("MAX_PAYMENT_FAILURES", 3)),
            grace_period=timedelta(days=int(cfg.get("GRACE_PERIOD_DAYS", 7))),
        )


@dataclass(frozen=True)
class SubscriptionView:
    """The Subscription Record an event targets."""
    ref: str
    tier: Tier
    status: SubscriptionStatus
    monthly_price_cents: Optional[int] = None
    cancel_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class BillingState:
    tier: Tier = Tier.FREE
    tier_expires_at: Optional[datetime] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    failed_count: int = 0
    grace_period_end: Optional[datetime] = None
    subscription: Optional[SubscriptionView] = None

    def owns(self, subscription_ref: Optional[str]) -> bool:
        """True when an event for this subscription may drive the account's tier."""
        if self.subscription_ref is None:
            # a record the account has already let go of does not re-attach on a late non-active event
            return self.subscription is None
        return self.subscription_ref == subscription_ref

    def follows(self, subscription_ref: Optional[str]) -> bool:
        """True when invoices for this subscription drive the account's dunning state."""
        return subscription_ref is not None and self.subscription_ref == subscription_ref

    def with_subscription(self, **changes) -> "BillingState":
        if self.subscription is None:
            return self
        return replace(self, subscription=replace(self.subscription, **changes))

    def downgraded(self) -> "BillingState":
        """Forced free: counters cleared, current subscription marked canceled."""
        state = replace(
            self,
            tier=Tier.FREE,
            tier_expires_at=None,
            subscription_ref=None,
            failed_count=0,
            grace_period_end=None,
        )
        return state.with_subscription(status=SubscriptionStatus.CANCELED)
