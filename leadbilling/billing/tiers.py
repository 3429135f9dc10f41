from enum import Enum
from typing import Dict, Optional

from flask import current_app


class Tier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value) -> Optional["Tier"]:
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None

    @property
    def is_paid(self) -> bool:
        return self is not Tier.FREE


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class EventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value) -> Optional["EventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


UNLIMITED = -1

# Lead claims included per billing cycle
TIER_CREDIT_LIMITS: Dict[Tier, int] = {
    Tier.FREE: 5,
    Tier.BASIC: 20,
    Tier.PRO: UNLIMITED,
    Tier.ENTERPRISE: UNLIMITED,
}

# Per-lead fee once the cycle's credits are gone (cents)
LEAD_FEE_CENTS: Dict[Tier, int] = {
    Tier.FREE: 1500,
    Tier.BASIC: 1000,
    Tier.PRO: 0,
    Tier.ENTERPRISE: 0,
}

# Upstream statuses that keep the paid tier
ACTIVE_UPSTREAM = {"active", "trialing"}
# Renewal unpaid; the grace monitor owns the downgrade
DUNNING_UPSTREAM = {"past_due", "unpaid"}

_UPSTREAM_TO_LOCAL = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

for _table in (TIER_CREDIT_LIMITS, LEAD_FEE_CENTS):
    if set(_table) != set(Tier):
        raise RuntimeError(f"tier table incomplete: missing {set(Tier) - set(_table)}")


def credit_limit(tier: Tier) -> int:
    return TIER_CREDIT_LIMITS[tier]


def lead_fee_cents(tier: Tier) -> int:
    return LEAD_FEE_CENTS[tier]


def requires_payment(tier: Tier, credits_used: int) -> bool:
    """Quota exhausted for a tier that charges per lead."""
    if lead_fee_cents(tier) == 0:
        return False
    limit = credit_limit(tier)
    if limit == UNLIMITED:
        return False
    return credits_used >= limit


def local_status(upstream: Optional[str]) -> SubscriptionStatus:
    return _UPSTREAM_TO_LOCAL.get((upstream or "").lower(), SubscriptionStatus.PAST_DUE)


def price_map() -> Dict[str, Tier]:
    """
    Configured Stripe Price IDs -> tier.
    Keyed off known Price IDs in config to avoid brittle conditionals.
    """
    cfg = current_app.config
    mapping = {
        cfg.get("STRIPE_PRICE_BASIC"): Tier.BASIC,
        cfg.get("STRIPE_PRICE_PRO"): Tier.PRO,
        cfg.get("STRIPE_PRICE_ENTERPRISE"): Tier.ENTERPRISE,
    }
    mapping.pop(None, None)
    return mapping


def price_for_tier(tier: Tier) -> Optional[str]:
    for price_id, t in price_map().items():
        if t is tier:
            return price_id
    return None
