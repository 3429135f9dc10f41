"""
Stripe event payload -> BillingEvent.

Only this module knows where Stripe keeps things inside `data.object`
(and the places newer API versions moved them to).
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .tiers import EventType, Tier, price_map
from leadbilling.utils.helpers import from_unix, ref_id, safe_int


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    type: EventType
    created: Optional[datetime] = None

    account_id: Optional[int] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    invoice_ref: Optional[str] = None

    tier: Optional[Tier] = None
    price_id: Optional[str] = None
    upstream_status: Optional[str] = None
    cancel_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    attempt_count: Optional[int] = None
    failure_reason: Optional[str] = None

    raw_object: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def related_refs(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """customer/subscription/invoice ids for the ledger; works for any event type."""
    obj = _object(payload)
    obj_type = obj.get("object")
    subscription = obj.get("id") if obj_type == "subscription" else _subscription_of(obj)
    return {
        "customer_ref": ref_id(obj.get("customer")),
        "subscription_ref": ref_id(subscription),
        "invoice_ref": obj.get("id") if obj_type == "invoice" else ref_id(obj.get("invoice")),
    }


def parse_event(payload: Dict[str, Any]) -> Optional[BillingEvent]:
    """None for event types the core does not model."""
    ev_type = EventType.parse(payload.get("type"))
    if ev_type is None:
        return None

    obj = _object(payload)
    meta = obj.get("metadata") or {}
    refs = related_refs(payload)
    price_id = _price_id(obj)

    if ev_type in (EventType.INVOICE_PAYMENT_SUCCEEDED, EventType.INVOICE_PAYMENT_FAILED):
        # Invoice metadata is usually empty; the subscription's is copied onto the invoice parent
        meta = meta or _subscription_details(obj).get("metadata") or {}
        amount = obj.get("amount_paid") if ev_type is EventType.INVOICE_PAYMENT_SUCCEEDED else obj.get("amount_due")
        period_end = _line_period_end(obj)
    elif ev_type is EventType.CHECKOUT_COMPLETED:
        amount = obj.get("amount_total")
        period_end = None
    else:
        amount = _unit_amount(obj)
        period_end = from_unix(obj.get("current_period_end")) or _item_period_end(obj)

    return BillingEvent(
        event_id=payload["id"],
        type=ev_type,
        created=from_unix(payload.get("created")),
        account_id=safe_int(meta.get("account_id")),
        customer_ref=refs["customer_ref"],
        subscription_ref=refs["subscription_ref"],
        invoice_ref=refs["invoice_ref"],
        tier=_tier(meta, price_id),
        price_id=price_id,
        upstream_status=obj.get("status") if obj.get("object") == "subscription" else None,
        cancel_at=from_unix(obj.get("cancel_at")),
        current_period_end=period_end,
        amount_cents=safe_int(amount),
        currency=obj.get("currency"),
        attempt_count=safe_int(obj.get("attempt_count")),
        failure_reason=_failure_reason(obj),
        raw_object=obj,
    )


def _object(payload: Dict[str, Any]) -> Dict[str, Any]:
    return (payload.get("data") or {}).get("object") or {}


def _subscription_details(obj: Dict[str, Any]) -> Dict[str, Any]:
    return ((obj.get("parent") or {}).get("subscription_details")) or obj.get("subscription_details") or {}


def _subscription_of(obj: Dict[str, Any]) -> Any:
    return obj.get("subscription") or _subscription_details(obj).get("subscription")


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(obj: Dict[str, Any]) -> Optional[str]:
    price = _first_item(obj).get("price")
    if price:
        return ref_id(price)
    # invoices: first line item
    lines = (obj.get("lines") or {}).get("data") or []
    if lines:
        line = lines[0]
        price = line.get("price") or ((line.get("pricing") or {}).get("price_details") or {}).get("price")
        return ref_id(price)
    return None


def _unit_amount(obj: Dict[str, Any]) -> Optional[int]:
    price = _first_item(obj).get("price")
    if isinstance(price, dict):
        return safe_int(price.get("unit_amount"))
    return None


def _item_period_end(obj: Dict[str, Any]) -> Optional[datetime]:
    return from_unix(_first_item(obj).get("current_period_end"))


def _line_period_end(obj: Dict[str, Any]) -> Optional[datetime]:
    lines = (obj.get("lines") or {}).get("data") or []
    if lines:
        return from_unix((lines[0].get("period") or {}).get("end"))
    return from_unix(obj.get("period_end"))


def _tier(meta: Dict[str, Any], price_id: Optional[str]) -> Optional[Tier]:
    tier = Tier.parse(meta.get("tier") or meta.get("plan"))
    if tier is not None:
        return tier
    if price_id:
        return price_map().get(price_id)
    return None


def _failure_reason(obj: Dict[str, Any]) -> Optional[str]:
    err = obj.get("last_finalization_error") or obj.get("last_payment_error") or {}
    return err.get("message") if isinstance(err, dict) else None
