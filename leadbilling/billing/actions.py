"""
Account-holder initiated changes: cancel, reactivate, switch tier.

Stripe is called first; local state changes only after Stripe accepted the
request, through the same resolver transitions the webhooks use so the
later webhook for the same subscription lands on a consistent record.
"""
from typing import Any, Dict, Optional

from . import reconcile, resolver
from .errors import UnknownAccount, ValidationFailed
from .tiers import Tier, price_for_tier
from leadbilling.extensions import db
from leadbilling.models import Account
from leadbilling.observability import log_event
from leadbilling.services import stripe_gateway
from leadbilling.utils.helpers import from_unix, iso, safe_int


def _get_account(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise UnknownAccount(account_id)
    return account


def _require_subscription(account: Account) -> str:
    if not account.stripe_subscription_id:
        raise ValidationFailed("No active subscription.")
    return account.stripe_subscription_id


def _apply(account_id: int, subscription_ref: Optional[str], transition) -> Account:
    account = reconcile.lock_account(account_id)
    sub = reconcile.subscription_row(subscription_ref)
    state = transition(reconcile.load_state(account, sub))
    reconcile.store_state(account, sub, state)
    db.session.commit()
    return account


def _upstream_cancel_at(upstream: Dict[str, Any]):
    cancel_at = from_unix(upstream.get("cancel_at"))
    if cancel_at is None and upstream.get("cancel_at_period_end"):
        items = (upstream.get("items") or {}).get("data") or [{}]
        cancel_at = from_unix(upstream.get("current_period_end")) or from_unix(items[0].get("current_period_end"))
    return cancel_at


def cancel_subscription(account_id: int) -> Dict[str, Any]:
    """Cancel at period end; the paid tier stays until then."""
    account = _get_account(account_id)
    ref = _require_subscription(account)
    cancel_at = _upstream_cancel_at(stripe_gateway.schedule_cancel(ref))

    account = _apply(account_id, ref, lambda s: resolver.apply_cancel_scheduled(s, cancel_at))
    log_event("subscription_cancel_scheduled", account_id=account_id, subscription=ref, cancel_at=cancel_at)
    return {"success": True, "tier": account.tier, "cancelAt": iso(cancel_at)}


def reactivate_subscription(account_id: int) -> Dict[str, Any]:
    account = _get_account(account_id)
    ref = _require_subscription(account)
    stripe_gateway.reactivate(ref)

    account = _apply(account_id, ref, resolver.apply_reactivated)
    log_event("subscription_reactivated", account_id=account_id, subscription=ref)
    return {"success": True, "tier": account.tier, "cancelAt": None}


def change_tier(account_id: int, tier_value: Any) -> Dict[str, Any]:
    tier = Tier.parse(tier_value)
    if tier is None:
        raise ValidationFailed("Invalid plan.")
    account = _get_account(account_id)
    ref = account.stripe_subscription_id

    if not tier.is_paid:
        if ref:
            stripe_gateway.cancel_now(ref)
        account = _apply(account_id, ref, lambda s: resolver.apply_manual_tier_change(s, Tier.FREE))
        log_event("tier_changed", account_id=account_id, tier=Tier.FREE.value, subscription=ref, source="manual")
        return {"success": True, "tier": account.tier}

    price_id = price_for_tier(tier)
    if not price_id:
        raise ValidationFailed("Invalid plan.")

    if not ref:
        # New subscription: the tier changes when checkout.session.completed arrives
        session = stripe_gateway.create_checkout_session(
            price_id=price_id, account_id=account.id, tier=tier.value, customer_id=account.stripe_customer_id,
        )
        log_event("checkout_session_created", account_id=account_id, tier=tier.value, session=session.get("id"))
        return {"success": True, "tier": account.effective_tier().value, "checkoutUrl": session.get("url"),
                "sessionId": session.get("id")}

    if account.effective_tier() is tier:
        return {"success": True, "tier": tier.value, "unchanged": True}

    upstream = stripe_gateway.change_plan(ref, price_id=price_id, account_id=account.id, tier=tier.value)
    items = (upstream.get("items") or {}).get("data") or [{}]
    price = items[0].get("price")
    monthly = safe_int(price.get("unit_amount")) if isinstance(price, dict) else None

    account = _apply(account_id, ref, lambda s: resolver.apply_manual_tier_change(s, tier, monthly_price_cents=monthly))
    log_event("tier_changed", account_id=account_id, tier=tier.value, subscription=ref, source="manual")
    return {"success": True, "tier": account.tier}
