"""
On-Demand Charge Gate.

A claim is one of:
  * already claimed      -> success, nothing charged or consumed
  * covered by quota     -> consume + LeadClaim in one transaction
  * paid                 -> charge, then consume + LeadClaim; if that last
                            step fails the charge is refunded (compensating action)

A Stripe charge and a local counter cannot share a transaction, so the paid
path is a saga: a failed charge never consumes quota, and a failed consume
after a successful charge is reversed by a refund rather than rolled back.
A charge whose outcome is unknown (timeout, connection error) leaves its fee
pending; the next claim of that lead retries it under the same idempotency key.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import meter
from .errors import (
    ADD_PAYMENT_METHOD_MESSAGE,
    BillingError,
    ChargeDeclined,
    ClaimFailed,
    PaymentPlatformUnavailable,
    PaymentRequired,
    UnknownAccount,
    ValidationFailed,
)
from .tiers import Tier, credit_limit, lead_fee_cents, requires_payment
from leadbilling.extensions import db
from leadbilling.models import Account, LeadClaim, Payment
from leadbilling.models.lead_claim import SOURCE_PAID, SOURCE_QUOTA
from leadbilling.models.payment import KIND_LEAD_FEE, KIND_REFUND, PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCEEDED
from leadbilling.observability import log_event
from leadbilling.services import stripe_gateway
from leadbilling.utils.helpers import utcnow

MAX_LEAD_ID_LENGTH = 64


@dataclass
class ClaimResult:
    credits_used: int
    credit_limit: int
    charged: bool = False
    fee_cents: int = 0
    already_claimed: bool = False
    claim_id: Optional[int] = None
    charge_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "creditsUsed": self.credits_used,
            "creditLimit": self.credit_limit,
            "charged": self.charged,
            "feeCents": self.fee_cents,
            "alreadyClaimed": self.already_claimed,
            "claimId": self.claim_id,
            "chargeReference": self.charge_reference,
        }


def _clean_lead_id(lead_id: Any) -> str:
    value = str(lead_id).strip() if lead_id is not None else ""
    if not value:
        raise ValidationFailed("leadId is required")
    if len(value) > MAX_LEAD_ID_LENGTH:
        raise ValidationFailed("leadId is too long")
    return value


def _existing_claim(account_id: int, lead_id: str) -> Optional[LeadClaim]:
    return db.session.execute(
        select(LeadClaim).where(LeadClaim.account_id == account_id, LeadClaim.lead_id == lead_id)
    ).scalar_one_or_none()


def _already_claimed(account_id: int, lead_id: str, now: datetime) -> ClaimResult:
    account = db.session.get(Account, account_id)
    existing = _existing_claim(account_id, lead_id)
    tier = account.effective_tier(now)
    log_event("lead_already_claimed", account_id=account_id, lead_id=lead_id)
    return ClaimResult(
        credits_used=meter.credits_used_now(account, now),
        credit_limit=credit_limit(tier),
        already_claimed=True,
        claim_id=existing.id if existing else None,
        charge_reference=existing.charge_reference if existing else None,
    )


def claim(account_id: int, lead_id: Any, *, now: Optional[datetime] = None) -> ClaimResult:
    lead_id = _clean_lead_id(lead_id)
    now = now or utcnow()

    account = db.session.get(Account, account_id)
    if account is None:
        raise UnknownAccount(account_id)
    if _existing_claim(account_id, lead_id) is not None:
        return _already_claimed(account_id, lead_id, now)

    tier = account.effective_tier(now)
    if _pending_fee(account_id, lead_id) is not None:
        # an earlier charge for this lead may have gone through; finish that attempt
        return _claim_paid(account_id, lead_id, tier, now)
    if not requires_payment(tier, meter.credits_used_now(account, now)):
        consumed = meter.try_consume(account_id, now=now)
        if consumed.allowed:
            lead_claim = LeadClaim(account_id=account_id, lead_id=lead_id, payment_required=False, credit_source=SOURCE_QUOTA)
            db.session.add(lead_claim)
            try:
                db.session.commit()
            except IntegrityError:
                # concurrent claim of the same lead won; our consume rolls back with it
                db.session.rollback()
                return _already_claimed(account_id, lead_id, now)
            log_event("lead_claimed", account_id=account_id, lead_id=lead_id, source=SOURCE_QUOTA,
                      credits_used=consumed.credits_used)
            return ClaimResult(
                credits_used=consumed.credits_used,
                credit_limit=consumed.credit_limit,
                claim_id=lead_claim.id,
            )
        db.session.rollback()
        log_event("quota_race_lost", account_id=account_id, lead_id=lead_id)
        tier = consumed.tier

    return _claim_paid(account_id, lead_id, tier, now)


def _pending_fee(account_id: int, lead_id: str) -> Optional[Payment]:
    """A lead fee whose charge outcome was never learned; a retry reuses it and its idempotency key."""
    rows = db.session.execute(
        select(Payment)
        .where(Payment.account_id == account_id, Payment.kind == KIND_LEAD_FEE, Payment.status == PAYMENT_PENDING)
        .order_by(Payment.id)
    ).scalars()
    return next((p for p in rows if (p.meta or {}).get("lead_id") == lead_id), None)


def _claim_paid(account_id: int, lead_id: str, tier: Tier, now: datetime) -> ClaimResult:
    account = db.session.get(Account, account_id)

    payment = _pending_fee(account_id, lead_id)
    if payment is not None:
        # same amount and card as the unresolved attempt, or Stripe rejects the reused key
        fee = payment.amount_cents
        payment_method = payment.meta.get("payment_method") or stripe_gateway.find_payment_method(account.stripe_customer_id)
        log_event("lead_fee_retry", account_id=account_id, lead_id=lead_id, payment_id=payment.id)
    else:
        fee = lead_fee_cents(tier)
        payment_method = stripe_gateway.find_payment_method(account.stripe_customer_id)
        if not payment_method:
            log_event("lead_claim_needs_payment_method", account_id=account_id, lead_id=lead_id, fee_cents=fee)
            raise PaymentRequired(ADD_PAYMENT_METHOD_MESSAGE, needs_payment_method=True, fee_cents=fee)

        payment = Payment(
            account_id=account_id,
            kind=KIND_LEAD_FEE,
            amount_cents=fee,
            currency=current_app.config.get("LEAD_FEE_CURRENCY", "usd"),
            description=f"Lead claim fee ({tier.value})",
            meta={"lead_id": lead_id, "tier": tier.value, "payment_method": payment_method},
        )
        db.session.add(payment)
        db.session.commit()

    try:
        intent_id = stripe_gateway.charge_off_session(
            customer_id=account.stripe_customer_id,
            payment_method_id=payment_method,
            amount_cents=fee,
            currency=payment.currency,
            description=payment.description,
            metadata={"account_id": account_id, "lead_id": lead_id, "payment_id": payment.id, "type": "lead_fee"},
            idempotency_key=stripe_gateway.make_idempotency_key("lead_fee", account_id, lead_id, payment.id),
        )
    except ChargeDeclined as e:
        payment.settle(PAYMENT_FAILED, payment_intent_id=e.payment_intent_id, failure_reason=e.message)
        db.session.commit()
        log_event("lead_fee_declined", level=logging.WARNING, account_id=account_id, lead_id=lead_id,
                  payment_id=payment.id, reason=e.message)
        raise PaymentRequired(e.message, needs_payment_method=e.requires_action, fee_cents=fee) from e
    except PaymentPlatformUnavailable:
        # Stripe may or may not have charged; the row stays pending for the retry
        log_event("lead_fee_outcome_unknown", level=logging.WARNING, account_id=account_id, lead_id=lead_id,
                  payment_id=payment.id)
        raise
    except BillingError as e:
        payment.settle(PAYMENT_FAILED, failure_reason=e.message)
        db.session.commit()
        log_event("lead_fee_error", level=logging.WARNING, account_id=account_id, lead_id=lead_id,
                  payment_id=payment.id, error=e.code)
        raise

    payment.settle(PAYMENT_SUCCEEDED, payment_intent_id=intent_id)
    db.session.commit()
    log_event("lead_fee_charged", account_id=account_id, lead_id=lead_id, payment_id=payment.id,
              amount_cents=fee, payment_intent=intent_id)

    try:
        consumed = meter.try_consume(account_id, now=now, paid=True)
        if not consumed.allowed:
            raise ClaimFailed()
        lead_claim = LeadClaim(
            account_id=account_id,
            lead_id=lead_id,
            payment_required=True,
            credit_source=SOURCE_PAID,
            payment_id=payment.id,
            charge_reference=intent_id,
        )
        db.session.add(lead_claim)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = _existing_claim(account_id, lead_id)
        if winner is None or winner.payment_id != payment.id:
            _refund(payment, reason="already_claimed")
        return _already_claimed(account_id, lead_id, now)
    except (SQLAlchemyError, ClaimFailed) as e:
        db.session.rollback()
        current_app.logger.exception("lead_claim_consume_failed")
        _refund(payment, reason=type(e).__name__)
        raise ClaimFailed() from e

    log_event("lead_claimed", account_id=account_id, lead_id=lead_id, source=SOURCE_PAID,
              credits_used=consumed.credits_used, payment_id=payment.id)
    return ClaimResult(
        credits_used=consumed.credits_used,
        credit_limit=consumed.credit_limit,
        charged=True,
        fee_cents=fee,
        claim_id=lead_claim.id,
        charge_reference=intent_id,
    )


def _refund(charge: Payment, *, reason: str) -> Payment:
    """Best effort: a failed refund is recorded and logged for manual follow-up, never raised."""
    refund_row = Payment(
        account_id=charge.account_id,
        kind=KIND_REFUND,
        amount_cents=charge.amount_cents,
        currency=charge.currency,
        refund_of_id=charge.id,
        description=f"Refund of payment {charge.id}: {reason}",
        meta=dict(charge.meta or {}, reason=reason),
    )
    db.session.add(refund_row)
    db.session.commit()
    try:
        refund_id = stripe_gateway.refund(
            payment_intent_id=charge.stripe_payment_intent_id,
            idempotency_key=stripe_gateway.make_idempotency_key("lead_fee_refund", charge.id),
        )
    except BillingError as e:
        refund_row.settle(PAYMENT_FAILED, failure_reason=e.message)
        db.session.commit()
        log_event("lead_fee_refund_failed", level=logging.ERROR, payment_id=charge.id, reason=reason, error=e.message)
        return refund_row

    refund_row.stripe_refund_id = refund_id
    refund_row.settle(PAYMENT_SUCCEEDED)
    db.session.commit()
    log_event("lead_fee_refunded", level=logging.WARNING, payment_id=charge.id, refund_id=refund_id, reason=reason)
    return refund_row


def fee_info(account: Account, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Read-only projection of what the next claim would cost."""
    now = now or utcnow()
    tier = account.effective_tier(now)
    used = meter.credits_used_now(account, now)
    needs_payment = requires_payment(tier, used)
    fee = lead_fee_cents(tier) if needs_payment else 0
    return {
        "tier": tier.value,
        "creditsUsed": used,
        "creditLimit": credit_limit(tier),
        "needsPayment": needs_payment,
        "feeCents": fee,
        "feeFormatted": f"${fee / 100:.2f}",
        "hasPaymentMethod": account.has_payment_method,
    }
