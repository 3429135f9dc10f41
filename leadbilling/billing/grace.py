"""
Grace Period Monitor.

    current     failed_count == 0
    retrying    0 < failed_count < max failures
    grace       failed_count >= max failures, grace_period_end set
    downgraded  back on free with no current subscription after having one

The failed-payment transition never downgrades; only `expire_if_due` does,
so an account keeps its paid tier until the deadline even after the last
allowed failure.
"""
import math
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import select

from .state import BillingState, Policy
from .tiers import SubscriptionStatus
from leadbilling.utils.helpers import iso, utcnow


class GraceState(str, Enum):
    CURRENT = "current"
    RETRYING = "retrying"
    GRACE = "grace"
    DOWNGRADED = "downgraded"


def deadline(state: BillingState, now: datetime, policy: Policy) -> datetime:
    period_end = state.subscription.current_period_end if state.subscription else None
    if period_end is not None and period_end > now:
        return period_end
    return now + policy.grace_period


def on_payment_failed(state: BillingState, now: datetime, policy: Policy) -> BillingState:
    failed = state.failed_count + 1
    grace_end = state.grace_period_end
    if failed >= policy.max_failures and grace_end is None:
        grace_end = deadline(state, now, policy)
    state = replace(state, failed_count=failed, grace_period_end=grace_end)
    if state.subscription and state.subscription.status is SubscriptionStatus.ACTIVE:
        state = state.with_subscription(status=SubscriptionStatus.PAST_DUE)
    return state


def on_payment_succeeded(state: BillingState, now: datetime, policy: Policy) -> BillingState:
    state = replace(state, failed_count=0, grace_period_end=None)
    if state.subscription and state.subscription.status is SubscriptionStatus.PAST_DUE:
        state = state.with_subscription(status=SubscriptionStatus.ACTIVE)
    return state


def is_due(state: BillingState, now: datetime, policy: Policy) -> bool:
    return (
        state.failed_count >= policy.max_failures
        and state.grace_period_end is not None
        and now >= state.grace_period_end
    )


def expire_if_due(state: BillingState, now: datetime, policy: Policy) -> BillingState:
    if not is_due(state, now, policy):
        return state
    return state.downgraded()


def classify(failed_count: int, grace_period_end: Optional[datetime], policy: Policy, *,
             lapsed: bool = False) -> GraceState:
    if failed_count == 0:
        return GraceState.DOWNGRADED if lapsed else GraceState.CURRENT
    if failed_count >= policy.max_failures and grace_period_end is not None:
        return GraceState.GRACE
    return GraceState.RETRYING


def _lapsed(account) -> bool:
    from leadbilling.extensions import db
    from leadbilling.models import Subscription

    if account.id is None or account.stripe_subscription_id or (account.tier or "free") != "free":
        return False
    return db.session.execute(
        select(Subscription.id).where(Subscription.account_id == account.id).limit(1)
    ).first() is not None


def grace_status(account, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Read-only projection for dashboards."""
    now = now or utcnow()
    policy = Policy.from_config(current_app.config)
    state = classify(account.failed_count, account.grace_period_end, policy, lapsed=_lapsed(account))
    days_remaining = None
    if state is GraceState.GRACE:
        days_remaining = max(0, math.ceil((account.grace_period_end - now).total_seconds() / 86400))
    return {
        "state": state.value,
        "inGracePeriod": state is GraceState.GRACE,
        "failedCount": account.failed_count,
        "gracePeriodEnd": iso(account.grace_period_end),
        "daysRemaining": days_remaining,
    }


def sweep_expired(now: Optional[datetime] = None) -> List[int]:
    """
    Scheduled expiry check: downgrade every account whose grace window has passed.
    Each account is handled in its own transaction; returns the ids downgraded.
    """
    from leadbilling.extensions import db
    from leadbilling.models import Account
    from . import reconcile

    now = now or utcnow()
    policy = Policy.from_config(current_app.config)
    candidates = db.session.execute(
        select(Account.id).where(
            Account.failed_count >= policy.max_failures,
            Account.grace_period_end.is_not(None),
            Account.grace_period_end <= now,
        )
    ).scalars().all()

    downgraded = []
    for account_id in candidates:
        if reconcile.run_expiry_check(account_id, now=now):
            downgraded.append(account_id)
    return downgraded
