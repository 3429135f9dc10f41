from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from leadbilling.billing.tiers import Tier
from leadbilling.extensions import db
from leadbilling.models import Account, LeadClaim, Payment, Subscription, WebhookEvent
from leadbilling.models.payment import PaymentAlreadySettled


def _account(name="Acme Cleaning", **kw):
    acct = Account(name=name, **kw)
    db.session.add(acct)
    db.session.commit()
    return acct


def test_account_defaults(app):
    with app.app_context():
        acct = _account()
        assert acct.tier == "free"
        assert acct.credits_used == 0
        assert acct.failed_count == 0
        assert acct.credits_reset_at is not None
        assert acct.has_payment_method is False


def test_stripe_customer_is_linked_to_one_account(app):
    with app.app_context():
        _account(stripe_customer_id="cus_123")
        db.session.add(Account(name="Copycat", stripe_customer_id="cus_123"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_tier_is_constrained(app):
    with app.app_context():
        db.session.add(Account(name="Bad Tier", tier="gold"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_effective_tier_collapses_after_expiry(app):
    now = datetime(2026, 1, 10)
    with app.app_context():
        acct = _account(tier="pro", tier_expires_at=now)
        assert acct.effective_tier(now - timedelta(seconds=1)) is Tier.PRO
        assert acct.effective_tier(now) is Tier.FREE


def test_subscription_id_is_unique(app):
    with app.app_context():
        acct = _account()
        db.session.add(Subscription(account_id=acct.id, stripe_subscription_id="sub_001", tier="pro", status="active"))
        db.session.commit()

        # history is kept: a second subscription for the same account is fine
        db.session.add(Subscription(account_id=acct.id, stripe_subscription_id="sub_002", tier="basic", status="canceled"))
        db.session.commit()

        db.session.add(Subscription(account_id=acct.id, stripe_subscription_id="sub_001", tier="pro", status="active"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_lead_claim_unique_per_account_and_lead(app):
    with app.app_context():
        acct = _account()
        db.session.add(LeadClaim(account_id=acct.id, lead_id="lead-1"))
        db.session.commit()

        db.session.add(LeadClaim(account_id=acct.id, lead_id="lead-1", credit_source="paid"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_webhook_event_id_is_unique(app):
    with app.app_context():
        db.session.add(WebhookEvent(event_id="evt_1", type="invoice.paid", payload={}, status="processing"))
        db.session.commit()
        db.session.add(WebhookEvent(event_id="evt_1", type="invoice.paid", payload={}, status="processing"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_payment_settles_once(app):
    with app.app_context():
        acct = _account()
        payment = Payment(account_id=acct.id, kind="lead_fee", amount_cents=1500)
        db.session.add(payment)
        db.session.commit()
        assert payment.status == "pending"
        assert payment.is_terminal is False

        payment.settle("succeeded", payment_intent_id="pi_1")
        db.session.commit()
        assert payment.settled_at is not None
        assert payment.stripe_payment_intent_id == "pi_1"

        with pytest.raises(PaymentAlreadySettled):
            payment.settle("failed", failure_reason="late")


def test_payment_settle_rejects_non_terminal_status(app):
    with app.app_context():
        acct = _account()
        payment = Payment(account_id=acct.id, kind="lead_fee", amount_cents=1500)
        with pytest.raises(ValueError):
            payment.settle("pending")
