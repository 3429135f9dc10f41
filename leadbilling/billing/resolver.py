"""
Tier Resolver: (event, current state) -> next state.

Pure; no database, no Stripe, no clock. The event payload is the only source
of truth for the fields it carries. Every transition is idempotent: applying
the same event to its own output returns that output unchanged.
"""
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional

from . import grace
from .events import BillingEvent
from .state import BillingState, Policy, SubscriptionView
from .tiers import ACTIVE_UPSTREAM, DUNNING_UPSTREAM, EventType, SubscriptionStatus, Tier, local_status

Transition = Callable[[BillingEvent, BillingState, datetime, Policy], BillingState]


def resolve(event: BillingEvent, state: BillingState, *, now: datetime, policy: Policy) -> BillingState:
    return _TRANSITIONS[event.type](event, state, now, policy)


def resolved_tier(event: BillingEvent, state: BillingState) -> Tier:
    """Event tier, else the tier already on record (never a hard-coded default)."""
    if event.tier is not None:
        return event.tier
    if state.subscription is not None:
        return state.subscription.tier
    return state.tier


def _view(event: BillingEvent, state: BillingState, *, tier: Tier, status: SubscriptionStatus,
          cancel_at: Optional[datetime]) -> SubscriptionView:
    prev = state.subscription
    return SubscriptionView(
        ref=event.subscription_ref,
        tier=tier,
        status=status,
        monthly_price_cents=event.amount_cents if event.amount_cents is not None else (prev.monthly_price_cents if prev else None),
        cancel_at=cancel_at,
        current_period_end=event.current_period_end or (prev.current_period_end if prev else None),
    )


def _on_checkout_completed(event, state, now, policy):
    if not event.subscription_ref:
        # one-off payment checkouts carry no subscription
        return state
    tier = resolved_tier(event, state)
    prev = state.subscription
    cancel_at = prev.cancel_at if prev else None
    status = SubscriptionStatus.ACTIVE
    if prev is not None and prev.status is SubscriptionStatus.PAST_DUE:
        status = prev.status
    view = _view(event, state, tier=tier, status=status, cancel_at=cancel_at)
    return replace(
        state,
        tier=tier,
        tier_expires_at=cancel_at,
        customer_ref=event.customer_ref or state.customer_ref,
        subscription_ref=event.subscription_ref,
        subscription=view,
    )


def _on_subscription_changed(event, state, now, policy):
    upstream = (event.upstream_status or "").lower()
    tier = resolved_tier(event, state)
    view = _view(event, state, tier=tier, status=local_status(upstream), cancel_at=event.cancel_at)
    owned = state.owns(event.subscription_ref)
    state = replace(state, subscription=view, customer_ref=state.customer_ref or event.customer_ref)

    if upstream in ACTIVE_UPSTREAM:
        return replace(state, tier=tier, tier_expires_at=event.cancel_at, subscription_ref=event.subscription_ref)
    if not owned:
        # another subscription's lifecycle; the account follows its current one
        return state
    if upstream in DUNNING_UPSTREAM:
        # the grace monitor decides when an unpaid subscription loses its tier
        return replace(state, tier_expires_at=event.cancel_at, subscription_ref=event.subscription_ref)
    return replace(
        state,
        tier=Tier.FREE,
        tier_expires_at=None,
        subscription_ref=None if view.status is SubscriptionStatus.CANCELED else event.subscription_ref,
    )


def _on_subscription_deleted(event, state, now, policy):
    prev = state.subscription
    owned = state.owns(event.subscription_ref)
    tier = prev.tier if prev else resolved_tier(event, state)
    view = _view(event, state, tier=tier, status=SubscriptionStatus.CANCELED,
                 cancel_at=event.cancel_at or (prev.cancel_at if prev else None))
    state = replace(state, subscription=view)
    if not owned:
        return state
    return state.downgraded()


def _on_payment_succeeded(event, state, now, policy):
    if event.current_period_end and state.subscription is not None:
        state = state.with_subscription(current_period_end=event.current_period_end)
    if not state.follows(event.subscription_ref):
        # an old subscription's invoice settles that record only
        if state.subscription and state.subscription.status is SubscriptionStatus.PAST_DUE:
            state = state.with_subscription(status=SubscriptionStatus.ACTIVE)
        return state
    return grace.on_payment_succeeded(state, now, policy)


def _on_payment_failed(event, state, now, policy):
    if not state.follows(event.subscription_ref):
        if state.subscription and state.subscription.status is SubscriptionStatus.ACTIVE:
            state = state.with_subscription(status=SubscriptionStatus.PAST_DUE)
        return state
    return grace.on_payment_failed(state, now, policy)


_TRANSITIONS: Dict[EventType, Transition] = {
    EventType.CHECKOUT_COMPLETED: _on_checkout_completed,
    EventType.SUBSCRIPTION_CREATED: _on_subscription_changed,
    EventType.SUBSCRIPTION_UPDATED: _on_subscription_changed,
    EventType.SUBSCRIPTION_DELETED: _on_subscription_deleted,
    EventType.INVOICE_PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventType.INVOICE_PAYMENT_FAILED: _on_payment_failed,
}

_missing = set(EventType) - set(_TRANSITIONS)
if _missing:
    raise RuntimeError(f"no transition for event types: {sorted(m.value for m in _missing)}")


# ----- Account-holder initiated transitions (same state machine, local trigger) -----

def apply_manual_tier_change(state: BillingState, tier: Tier, *, monthly_price_cents: Optional[int] = None) -> BillingState:
    if not tier.is_paid:
        return state.downgraded()
    state = replace(state, tier=tier)
    changes = {"tier": tier}
    if monthly_price_cents is not None:
        changes["monthly_price_cents"] = monthly_price_cents
    return state.with_subscription(**changes)


def apply_cancel_scheduled(state: BillingState, cancel_at: Optional[datetime]) -> BillingState:
    """Tier unchanged; it lapses at cancel_at through tier_expires_at."""
    return replace(state, tier_expires_at=cancel_at).with_subscription(cancel_at=cancel_at)


def apply_reactivated(state: BillingState) -> BillingState:
    return replace(state, tier_expires_at=None).with_subscription(cancel_at=None)
