"""
Webhook reconciliation: ledger -> resolver/grace monitor -> Account + Subscription.

Billing-state writes lock the Account row (SELECT ... FOR UPDATE) for the
read-resolve-write, so two events for one account never interleave. Quota
consumption does not take this lock; it is a single conditional UPDATE of
columns this module never writes.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy import select

from . import grace, ledger, resolver
from .events import BillingEvent, parse_event, related_refs
from .state import BillingState, Policy, SubscriptionView
from .tiers import EventType, SubscriptionStatus, Tier
from leadbilling.extensions import db
from leadbilling.models import Account, Payment, Subscription
from leadbilling.models.payment import KIND_INVOICE, PAYMENT_FAILED, PAYMENT_SUCCEEDED
from leadbilling.observability import log_event
from leadbilling.services import notifications
from leadbilling.utils.helpers import ref_id, utcnow

# Events after which an overdue grace window is enforced immediately
EXPIRY_CHECK_TYPES = {EventType.SUBSCRIPTION_UPDATED, EventType.INVOICE_PAYMENT_FAILED}
INVOICE_TYPES = {EventType.INVOICE_PAYMENT_SUCCEEDED, EventType.INVOICE_PAYMENT_FAILED}
TIER_BEARING_TYPES = {EventType.CHECKOUT_COMPLETED, EventType.SUBSCRIPTION_CREATED, EventType.SUBSCRIPTION_UPDATED}


@dataclass
class Outcome:
    notes: Optional[str] = None
    account_id: Optional[int] = None
    notices: List[Callable[[], Any]] = field(default_factory=list, repr=False)


# ----- Account row access shared with manual actions -----

def lock_account(account_id: int) -> Optional[Account]:
    return db.session.execute(
        select(Account).where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def subscription_row(subscription_ref: Optional[str]) -> Optional[Subscription]:
    if not subscription_ref:
        return None
    return db.session.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == subscription_ref)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def load_state(account: Account, sub: Optional[Subscription]) -> BillingState:
    view = None
    if sub is not None:
        view = SubscriptionView(
            ref=sub.stripe_subscription_id,
            tier=Tier.parse(sub.tier) or Tier.FREE,
            status=SubscriptionStatus(sub.status),
            monthly_price_cents=sub.monthly_price_cents,
            cancel_at=sub.cancel_at,
            current_period_end=sub.current_period_end,
        )
    return BillingState(
        tier=Tier.parse(account.tier) or Tier.FREE,
        tier_expires_at=account.tier_expires_at,
        customer_ref=account.stripe_customer_id,
        subscription_ref=account.stripe_subscription_id,
        failed_count=account.failed_count,
        grace_period_end=account.grace_period_end,
        subscription=view,
    )


def store_state(account: Account, sub: Optional[Subscription], state: BillingState,
                event_at: Optional[datetime] = None) -> Optional[Subscription]:
    account.tier = state.tier.value
    account.tier_expires_at = state.tier_expires_at
    account.stripe_customer_id = state.customer_ref
    account.stripe_subscription_id = state.subscription_ref
    account.failed_count = state.failed_count
    account.grace_period_end = state.grace_period_end

    view = state.subscription
    if view is None:
        return sub
    if sub is None:
        sub = Subscription(account_id=account.id, stripe_subscription_id=view.ref)
        db.session.add(sub)
    sub.tier = view.tier.value
    sub.status = view.status.value
    sub.monthly_price_cents = view.monthly_price_cents
    sub.cancel_at = view.cancel_at
    sub.current_period_end = view.current_period_end
    if event_at is not None:
        sub.last_event_at = event_at
    return sub


# ----- Webhook entry point -----

def handle_event(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record -> apply -> mark. Always returns a body for a 200; processing
    errors end up on the ledger entry, not in the response status.
    """
    event_id = payload["id"]
    event_type = payload["type"]
    entry = ledger.record_event(event_id, event_type, payload, related_refs(payload))
    if not entry.is_new:
        return {"received": True, "duplicate": True, "status": entry.status}

    try:
        outcome = apply_event(payload)
    except Exception as e:  # acknowledged anyway; Stripe must not redeliver forever
        db.session.rollback()
        current_app.logger.exception("stripe_webhook_handler_error")
        ledger.mark_failed(event_id, f"{type(e).__name__}: {e}")
        return {"received": True, "processed": False}

    ledger.mark_processed(event_id, notes=outcome.notes)
    _send(outcome)
    return {"received": True, "processed": True}


def _send(outcome: Outcome) -> None:
    for notice in outcome.notices:
        try:
            notice()
        except Exception:  # template/render errors; the transition is already committed
            current_app.logger.exception("billing_notice_failed")


def _find_account_id(event: BillingEvent) -> Optional[int]:
    if event.account_id is not None:
        return event.account_id
    sub = subscription_row(event.subscription_ref)
    if sub is not None:
        return sub.account_id
    if event.customer_ref:
        return db.session.execute(
            select(Account.id).where(Account.stripe_customer_id == event.customer_ref)
        ).scalar_one_or_none()
    return None


def _anomaly(event: BillingEvent, reason: str, **fields) -> Outcome:
    log_event("webhook_anomaly", level=logging.WARNING, reason=reason, event_id=event.event_id,
              type=event.type.value, customer=event.customer_ref, subscription=event.subscription_ref, **fields)
    return Outcome(notes=f"anomaly:{reason}")


def apply_event(payload: Dict[str, Any], *, now: Optional[datetime] = None) -> Outcome:
    event = parse_event(payload)
    if event is None:
        log_event("webhook_ignored", event_id=payload.get("id"), type=payload.get("type"))
        return Outcome(notes="ignored")

    now = now or utcnow()
    policy = Policy.from_config(current_app.config)

    account_id = _find_account_id(event)
    account = lock_account(account_id) if account_id is not None else None
    if account is None:
        return _anomaly(event, "unknown_account", account_id=account_id)

    sub = subscription_row(event.subscription_ref)
    if sub is not None and sub.account_id != account.id:
        db.session.rollback()
        return _anomaly(event, "subscription_account_mismatch", account_id=account.id, owner=sub.account_id)
    if event.type in INVOICE_TYPES and event.subscription_ref is None:
        # one-off invoices play no part in dunning
        db.session.rollback()
        log_event("webhook_ignored", event_id=event.event_id, type=event.type.value, reason="no_subscription")
        return Outcome(notes="ignored:no_subscription", account_id=account.id)
    if event.type in INVOICE_TYPES and _invoice_recorded(event.event_id):
        # a reclaimed delivery whose first attempt already committed
        db.session.rollback()
        return Outcome(notes="already_applied", account_id=account.id)

    if event.type in TIER_BEARING_TYPES and event.tier is None:
        log_event("tier_missing", level=logging.WARNING, event_id=event.event_id, account_id=account.id,
                  price_id=event.price_id, kept=account.tier)
    if sub is not None and sub.last_event_at and event.created and event.created < sub.last_event_at:
        log_event("stale_event_applied", level=logging.WARNING, event_id=event.event_id,
                  subscription=sub.stripe_subscription_id, created=event.created, last_event_at=sub.last_event_at)

    before = load_state(account, sub)
    if event.type in INVOICE_TYPES and not before.follows(event.subscription_ref):
        log_event("invoice_for_unfollowed_subscription", event_id=event.event_id, account_id=account.id,
                  subscription=event.subscription_ref, current=account.stripe_subscription_id)
    after = resolver.resolve(event, before, now=now, policy=policy)
    expired = event.type in EXPIRY_CHECK_TYPES and grace.is_due(after, now, policy)
    if expired:
        after = grace.expire_if_due(after, now, policy)

    store_state(account, sub, after, event_at=event.created)
    if event.type in INVOICE_TYPES:
        _record_invoice_payment(account, event, now)
    db.session.commit()

    log_event(
        "billing_state_applied",
        event_id=event.event_id, type=event.type.value, account_id=account.id,
        tier_before=before.tier.value, tier_after=after.tier.value,
        failed_count=after.failed_count, grace_period_end=after.grace_period_end,
        grace_state=(grace.GraceState.DOWNGRADED if expired else grace.classify(after.failed_count, after.grace_period_end, policy)).value,
    )
    outcome = Outcome(notes=f"{before.tier.value}->{after.tier.value}", account_id=account.id)
    outcome.notices = _notices(account, before, after, expired, event, policy)
    return outcome


def _invoice_recorded(event_id: str) -> bool:
    return db.session.execute(
        select(Payment.id).where(Payment.source_event_id == event_id)
    ).first() is not None


def _record_invoice_payment(account: Account, event: BillingEvent, now: datetime) -> Payment:
    succeeded = event.type is EventType.INVOICE_PAYMENT_SUCCEEDED
    payment = Payment(
        account_id=account.id,
        kind=KIND_INVOICE,
        amount_cents=max(0, event.amount_cents or 0),
        currency=event.currency or current_app.config.get("LEAD_FEE_CURRENCY", "usd"),
        status=PAYMENT_SUCCEEDED if succeeded else PAYMENT_FAILED,
        stripe_invoice_id=event.invoice_ref,
        stripe_payment_intent_id=ref_id(event.raw_object.get("payment_intent")),
        source_event_id=event.event_id,
        description="Subscription invoice",
        meta={"subscription": event.subscription_ref, "attempt_count": event.attempt_count},
        failure_reason=None if succeeded else (event.failure_reason or "payment_failed")[:255],
        settled_at=now,
    )
    db.session.add(payment)
    return payment


def _notices(account: Account, before: BillingState, after: BillingState, expired: bool,
             event: BillingEvent, policy: Policy) -> List[Callable[[], Any]]:
    if expired:
        return [lambda: notifications.send_downgraded(account, previous_tier=before.tier.value)]
    if event.type is not EventType.INVOICE_PAYMENT_FAILED or not before.follows(event.subscription_ref):
        return []
    if after.failed_count >= policy.max_failures:
        return [lambda: notifications.send_final_warning(account, grace_period_end=after.grace_period_end)]
    return [lambda: notifications.send_payment_failed(
        account,
        attempt=after.failed_count,
        max_attempts=policy.max_failures,
        grace_period_end=after.grace_period_end,
        invoice_id=event.invoice_ref,
    )]


# ----- Scheduled expiry -----

def run_expiry_check(account_id: int, *, now: Optional[datetime] = None) -> bool:
    """Force free if this account's grace window has passed. True when it downgraded."""
    now = now or utcnow()
    policy = Policy.from_config(current_app.config)
    account = lock_account(account_id)
    if account is None:
        db.session.rollback()
        return False
    sub = subscription_row(account.stripe_subscription_id)
    before = load_state(account, sub)
    if not grace.is_due(before, now, policy):
        db.session.rollback()
        return False

    after = grace.expire_if_due(before, now, policy)
    store_state(account, sub, after)
    db.session.commit()
    log_event("grace_expired_downgrade", level=logging.WARNING, account_id=account_id,
              previous_tier=before.tier.value, grace_period_end=before.grace_period_end)
    _send(Outcome(notices=[lambda: notifications.send_downgraded(account, previous_tier=before.tier.value)]))
    return True
