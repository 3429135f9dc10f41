"""
Every outbound Stripe call the billing core makes.

Stripe SDK exceptions never leave this module: declines become ChargeDeclined,
connectivity/rate-limit/server trouble becomes PaymentPlatformUnavailable and
rejected requests become ValidationFailed. Nothing here touches the database.
"""
from typing import Any, Dict, Optional
from flask import current_app
import stripe
from stripe import StripeClient
import hashlib, json

from leadbilling.billing.errors import ChargeDeclined, PaymentPlatformUnavailable, ValidationFailed
from leadbilling.utils.helpers import absolute_url, as_dict, ref_id


def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise PaymentPlatformUnavailable("Billing is not configured. Please try again later.")
    return StripeClient(key)


def make_idempotency_key(prefix: str, *parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return f"{prefix}:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when you change fields
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


def _translate(exc: Exception, op: str) -> Exception:
    current_app.logger.warning("stripe.%s failed: %s: %s", op, type(exc).__name__, exc)
    if isinstance(exc, stripe.InvalidRequestError):
        return ValidationFailed(getattr(exc, "user_message", None) or "The payment platform rejected this request.")
    return PaymentPlatformUnavailable("The payment platform is unavailable. Please try again.")


def find_payment_method(customer_id: Optional[str]) -> Optional[str]:
    """
    Default payment method of the Customer, else the first card on file.
    None when there is nothing chargeable (no customer, deleted customer, no cards).
    """
    if not customer_id:
        return None
    client = _client()
    try:
        customer = as_dict(client.customers.retrieve(customer_id))
        if customer.get("deleted"):
            return None
        default_pm = ref_id((customer.get("invoice_settings") or {}).get("default_payment_method"))
        if default_pm:
            return default_pm
        methods = client.payment_methods.list(params={"customer": customer_id, "type": "card", "limit": 1})
        data = as_dict(methods).get("data") or []
        return ref_id(data[0]) if data else None
    except stripe.StripeError as e:
        raise _translate(e, "find_payment_method") from e


def charge_off_session(
    *,
    customer_id: str,
    payment_method_id: str,
    amount_cents: int,
    currency: str,
    description: str,
    metadata: Dict[str, Any],
    idempotency_key: str,
) -> str:
    """
    Create and confirm a PaymentIntent immediately (off-session).
    Returns the PaymentIntent id on success; raises ChargeDeclined otherwise.
    """
    client = _client()
    params = {
        "amount": int(amount_cents),
        "currency": currency,
        "customer": customer_id,
        "payment_method": payment_method_id,
        "off_session": True,
        "confirm": True,
        "description": description,
        "metadata": {k: str(v) for k, v in metadata.items()},
    }
    try:
        intent = as_dict(client.payment_intents.create(params=params, options={"idempotency_key": idempotency_key}))
    except stripe.CardError as e:
        pi_id = ref_id(getattr(getattr(e, "error", None), "payment_intent", None))
        raise ChargeDeclined(e.user_message or "Your card was declined.", payment_intent_id=pi_id) from e
    except stripe.StripeError as e:
        raise _translate(e, "charge_off_session") from e

    if intent.get("status") == "succeeded":
        return intent["id"]

    # 3D Secure etc. cannot complete off-session; void it so it never settles later
    try:
        client.payment_intents.cancel(intent["id"])
    except stripe.StripeError:
        current_app.logger.warning("stripe.payment_intent_cancel_failed %s", intent.get("id"))
    raise ChargeDeclined(
        "Payment requires additional authentication. Please update your payment method in Billing settings.",
        payment_intent_id=intent.get("id"),
        requires_action=True,
    )


def refund(*, payment_intent_id: str, idempotency_key: str, reason: str = "requested_by_customer") -> str:
    client = _client()
    try:
        r = as_dict(client.refunds.create(
            params={"payment_intent": payment_intent_id, "reason": reason},
            options={"idempotency_key": idempotency_key},
        ))
    except stripe.StripeError as e:
        raise _translate(e, "refund") from e
    return r.get("id")


def schedule_cancel(subscription_id: str) -> Dict[str, Any]:
    """Cancel at period end (not immediately); the returned object carries cancel_at."""
    try:
        return as_dict(_client().subscriptions.update(subscription_id, params={"cancel_at_period_end": True}))
    except stripe.StripeError as e:
        raise _translate(e, "schedule_cancel") from e


def reactivate(subscription_id: str) -> Dict[str, Any]:
    try:
        return as_dict(_client().subscriptions.update(subscription_id, params={"cancel_at_period_end": False}))
    except stripe.StripeError as e:
        raise _translate(e, "reactivate") from e


def cancel_now(subscription_id: str) -> Dict[str, Any]:
    try:
        return as_dict(_client().subscriptions.cancel(subscription_id))
    except stripe.StripeError as e:
        raise _translate(e, "cancel_now") from e


def change_plan(subscription_id: str, *, price_id: str, account_id: int, tier: str) -> Dict[str, Any]:
    """Swap the single subscription item to a new Price, prorated, and restamp metadata."""
    client = _client()
    try:
        sub = as_dict(client.subscriptions.retrieve(subscription_id))
        items = (sub.get("items") or {}).get("data") or []
        if not items:
            raise ValidationFailed("Subscription has no items to change.")
        return as_dict(client.subscriptions.update(subscription_id, params={
            "items": [{"id": items[0]["id"], "price": price_id}],
            "proration_behavior": "create_prorations",
            "metadata": {"account_id": str(account_id), "tier": tier},
        }))
    except stripe.StripeError as e:
        raise _translate(e, "change_plan") from e


def create_checkout_session(*, price_id: str, account_id: int, tier: str, customer_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a Stripe Checkout Session for a subscription to the given Price.
    Returns: {"id": <session_id>, "url": <redirect_url or None>}
    """
    client = _client()
    meta = {"account_id": str(account_id), "tier": tier}
    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": absolute_url("billing/success?session_id={CHECKOUT_SESSION_ID}"),
        "cancel_url": absolute_url("billing/cancelled"),
        "billing_address_collection": "required",
        # Webhook context: the checkout and the subscription both carry account + tier
        "metadata": meta,
        "subscription_data": {"metadata": meta},
    }
    if customer_id:
        params["customer"] = customer_id
    # Param-aware idempotency: new key whenever Checkout params change
    idem = make_idempotency_key("checkout", account_id, price_id, _params_hash(params))
    try:
        session = as_dict(client.checkout.sessions.create(params=params, options={"idempotency_key": idem}))
    except stripe.StripeError as e:
        raise _translate(e, "create_checkout_session") from e
    return {"id": session.get("id"), "url": session.get("url")}
