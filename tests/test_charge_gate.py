from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from leadbilling.billing import gate, meter
from leadbilling.billing.errors import (
    ClaimFailed,
    PaymentPlatformUnavailable,
    PaymentRequired,
    UnknownAccount,
    ValidationFailed,
)
from leadbilling.extensions import db
from leadbilling.models import Account, LeadClaim, Payment

NOW = datetime(2026, 6, 15, 10, 0, 0)
CYCLE_START = NOW - timedelta(days=3)


def _claim(app, account_id, lead_id="lead-1"):
    with app.app_context():
        return gate.claim(account_id, lead_id, now=NOW)


def _snapshot(app, account_id):
    with app.app_context():
        acct = db.session.get(Account, account_id)
        claims = db.session.query(LeadClaim).filter_by(account_id=account_id).all()
        payments = db.session.query(Payment).filter_by(account_id=account_id).order_by(Payment.id).all()
        return {
            "credits_used": acct.credits_used,
            "claims": [(c.lead_id, c.credit_source, c.charge_reference) for c in claims],
            "payments": [(p.kind, p.status, p.amount_cents, p.refund_of_id) for p in payments],
        }


def test_free_tier_within_quota_consumes_a_credit(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=2, credits_reset_at=CYCLE_START)

    result = _claim(app, account_id)
    assert result.charged is False
    assert result.credits_used == 3
    assert result.credit_limit == 5
    assert result.to_dict()["success"] is True

    state = _snapshot(app, account_id)
    assert state["credits_used"] == 3
    assert state["claims"] == [("lead-1", "quota", None)]
    assert state["payments"] == []
    assert gateway.charges == []


def test_exhausted_free_tier_with_card_is_charged_fee(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")

    result = _claim(app, account_id)
    assert result.charged is True
    assert result.fee_cents == 1500
    assert result.credits_used == 6
    assert result.charge_reference == "pi_test_1"

    charge = gateway.charges[0]
    assert charge["amount_cents"] == 1500
    assert charge["customer_id"] == "cus_card"
    assert charge["payment_method_id"] == "pm_card_visa"
    assert charge["idempotency_key"].startswith("lead_fee:")

    state = _snapshot(app, account_id)
    assert state["credits_used"] == 6
    assert state["claims"] == [("lead-1", "paid", "pi_test_1")]
    assert state["payments"] == [("lead_fee", "succeeded", 1500, None)]


def test_exhausted_basic_tier_pays_basic_fee(app, make_account, gateway):
    account_id = make_account(tier="basic", credits_used=20, credits_reset_at=CYCLE_START, stripe_customer_id="cus_b")
    result = _claim(app, account_id)
    assert result.fee_cents == 1000
    assert gateway.charges[0]["amount_cents"] == 1000


def test_exhausted_without_payment_method_changes_nothing(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START)

    with pytest.raises(PaymentRequired) as info:
        _claim(app, account_id)
    assert info.value.needs_payment_method is True
    assert info.value.fee_cents == 1500
    assert info.value.status_code == 402
    assert "payment method" in info.value.message.lower()

    state = _snapshot(app, account_id)
    assert state == {"credits_used": 5, "claims": [], "payments": []}
    assert gateway.charges == []


def test_unlimited_tier_never_charges(app, make_account, gateway):
    account_id = make_account(tier="pro", credits_used=250, credits_reset_at=CYCLE_START, stripe_customer_id="cus_pro")

    result = _claim(app, account_id)
    assert result.charged is False
    assert result.credits_used == 251
    assert result.credit_limit == -1
    assert gateway.charges == []


def test_declined_charge_leaves_no_partial_effect(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    gateway.decline = "Your card has insufficient funds."

    with pytest.raises(PaymentRequired) as info:
        _claim(app, account_id)
    assert info.value.message == "Your card has insufficient funds."
    assert info.value.needs_payment_method is False

    state = _snapshot(app, account_id)
    assert state["credits_used"] == 5
    assert state["claims"] == []
    assert state["payments"] == [("lead_fee", "failed", 1500, None)]
    assert gateway.refunds == []


def test_charge_needing_authentication_asks_for_new_method(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    gateway.decline = "Payment requires additional authentication."
    gateway.requires_action = True

    with pytest.raises(PaymentRequired) as info:
        _claim(app, account_id)
    assert info.value.needs_payment_method is True


def test_platform_unavailable_is_retryable_and_changes_nothing(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    gateway.unavailable = True

    with pytest.raises(PaymentPlatformUnavailable) as info:
        _claim(app, account_id)
    assert info.value.status_code == 503

    state = _snapshot(app, account_id)
    assert state == {"credits_used": 5, "claims": [], "payments": []}


def test_unknown_charge_outcome_is_retried_under_the_same_key(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")

    def _timeout_first(_charge):
        if len(gateway.charges) == 1:
            raise PaymentPlatformUnavailable("The payment platform is unavailable. Please try again.")

    gateway.on_charge = _timeout_first

    with pytest.raises(PaymentPlatformUnavailable):
        _claim(app, account_id)
    assert _snapshot(app, account_id) == {
        "credits_used": 5, "claims": [], "payments": [("lead_fee", "pending", 1500, None)],
    }

    result = _claim(app, account_id)
    assert result.charged is True
    first, second = gateway.charges
    assert first["idempotency_key"] == second["idempotency_key"]
    assert second["payment_method_id"] == "pm_card_visa"

    state = _snapshot(app, account_id)
    assert state["payments"] == [("lead_fee", "succeeded", 1500, None)]
    assert state["claims"] == [("lead-1", "paid", "pi_test_2")]


def test_pending_fee_is_finished_even_when_quota_reopens(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")

    def _timeout(_charge):
        raise PaymentPlatformUnavailable("timeout")

    gateway.on_charge = _timeout
    with pytest.raises(PaymentPlatformUnavailable):
        _claim(app, account_id)

    gateway.on_charge = None
    with app.app_context():
        db.session.get(Account, account_id).credits_used = 0
        db.session.commit()

    result = _claim(app, account_id)
    assert result.charged is True
    assert len({c["idempotency_key"] for c in gateway.charges}) == 1
    assert gateway.refunds == []


def test_declined_retry_uses_a_fresh_key(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    gateway.decline = "Your card has insufficient funds."
    with pytest.raises(PaymentRequired):
        _claim(app, account_id)

    gateway.decline = None
    assert _claim(app, account_id).charged is True
    first, second = gateway.charges
    assert first["idempotency_key"] != second["idempotency_key"]
    statuses = [status for _, status, _, _ in _snapshot(app, account_id)["payments"]]
    assert statuses == ["failed", "succeeded"]


def test_claiming_same_lead_twice_consumes_and_charges_once(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")

    first = _claim(app, account_id)
    second = _claim(app, account_id)
    assert first.charged is True
    assert second.already_claimed is True
    assert second.charged is False
    assert second.claim_id == first.claim_id
    assert second.charge_reference == "pi_test_1"

    assert len(gateway.charges) == 1
    assert _snapshot(app, account_id)["credits_used"] == 6


def test_lead_ids_are_scoped_per_account(app, make_account, gateway):
    a = make_account(tier="free", credits_used=0, credits_reset_at=CYCLE_START)
    b = make_account(tier="free", credits_used=0, credits_reset_at=CYCLE_START, name="Other Co")
    assert _claim(app, a).already_claimed is False
    assert _claim(app, b).already_claimed is False


def test_consume_failure_after_charge_refunds(app, make_account, gateway, monkeypatch):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    real_consume = meter.try_consume

    def _broken(account_id, *, now=None, paid=False):
        if paid:
            raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))
        return real_consume(account_id, now=now, paid=paid)

    monkeypatch.setattr(meter, "try_consume", _broken)

    with pytest.raises(ClaimFailed):
        _claim(app, account_id)

    assert gateway.refunds[0]["payment_intent_id"] == "pi_test_1"
    state = _snapshot(app, account_id)
    assert state["credits_used"] == 5
    assert state["claims"] == []
    kinds = [(kind, status) for kind, status, _, _ in state["payments"]]
    assert kinds == [("lead_fee", "succeeded"), ("refund", "succeeded")]
    with app.app_context():
        charge_id = db.session.query(Payment).filter_by(kind="lead_fee").one().id
    assert state["payments"][1][3] == charge_id


def test_failed_refund_is_recorded_not_raised(app, make_account, gateway, monkeypatch):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    gateway.refund_error = PaymentPlatformUnavailable("down")
    monkeypatch.setattr(meter, "try_consume", lambda *a, **kw: meter.ConsumeResult(False, 5, 5, None))

    with pytest.raises(ClaimFailed):
        _claim(app, account_id)

    state = _snapshot(app, account_id)
    assert state["payments"][1][:2] == ("refund", "failed")


def test_concurrent_claim_during_charge_refunds_duplicate(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")

    def _other_request_wins(_charge):
        db.session.add(LeadClaim(account_id=account_id, lead_id="lead-1", credit_source="quota"))
        db.session.commit()

    gateway.on_charge = _other_request_wins

    result = _claim(app, account_id)
    assert result.already_claimed is True
    assert result.charged is False
    assert len(gateway.refunds) == 1

    state = _snapshot(app, account_id)
    assert state["credits_used"] == 5
    assert state["claims"] == [("lead-1", "quota", None)]


def test_quota_race_lost_falls_through_to_paid(app, make_account, gateway, monkeypatch):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_card")
    # the pre-check saw a free slot; the conditional update did not
    monkeypatch.setattr(gate, "requires_payment", lambda tier, used: False)

    result = _claim(app, account_id)
    assert result.charged is True
    assert _snapshot(app, account_id)["credits_used"] == 6


def test_expired_paid_tier_claims_as_free(app, make_account, gateway):
    account_id = make_account(
        tier="pro", credits_used=5, credits_reset_at=CYCLE_START,
        tier_expires_at=NOW - timedelta(hours=1), stripe_customer_id="cus_card",
    )
    result = _claim(app, account_id)
    assert result.charged is True
    assert result.fee_cents == 1500


def test_rollover_makes_claim_free_again(app, make_account, gateway):
    account_id = make_account(tier="free", credits_used=5, credits_reset_at=NOW - timedelta(days=31))
    result = _claim(app, account_id)
    assert result.charged is False
    assert result.credits_used == 1


@pytest.mark.parametrize("lead_id", ["", "   ", None, "x" * 65])
def test_invalid_lead_id_rejected(app, make_account, gateway, lead_id):
    account_id = make_account()
    with pytest.raises(ValidationFailed):
        _claim(app, account_id, lead_id)


def test_unknown_account(app, gateway):
    with pytest.raises(UnknownAccount):
        _claim(app, 424242)


def test_fee_info_projection(app, make_account):
    exhausted = make_account(tier="free", credits_used=5, credits_reset_at=CYCLE_START, stripe_customer_id="cus_x")
    fresh = make_account(tier="basic", credits_used=3, credits_reset_at=CYCLE_START, name="Fresh Co")
    with app.app_context():
        info = gate.fee_info(db.session.get(Account, exhausted), NOW)
        assert info == {
            "tier": "free",
            "creditsUsed": 5,
            "creditLimit": 5,
            "needsPayment": True,
            "feeCents": 1500,
            "feeFormatted": "$15.00",
            "hasPaymentMethod": True,
        }
        info = gate.fee_info(db.session.get(Account, fresh), NOW)
        assert info["needsPayment"] is False
        assert info["feeCents"] == 0
        assert info["hasPaymentMethod"] is False
