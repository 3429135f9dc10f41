import os
import json
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import pytest
import stripe

from leadbilling import create_app
from leadbilling.extensions import db
from leadbilling.billing.errors import ChargeDeclined, PaymentPlatformUnavailable
from leadbilling.models import Account
from leadbilling.services import stripe_gateway


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        STRIPE_WEBHOOK_SECRET="whsec_test",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def make_account(app):
    """Returns the new account's id (objects do not outlive the app context)."""
    def _make(**fields):
        values = {"name": "Sparkle Cleaning Co", "billing_email": "owner@sparkle.test", "tier": "free"}
        values.update(fields)
        with app.app_context():
            account = Account(**values)
            db.session.add(account)
            db.session.commit()
            return account.id
    return _make


@pytest.fixture()
def post_event(client, monkeypatch):
    """POST a Stripe event to the webhook with signature verification trusted."""
    def _fake_construct_event(payload, sig_header, secret):
        return json.loads(payload)
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_fake_construct_event))

    def _post(event):
        return client.post(
            "/webhooks/stripe",
            data=json.dumps(event),
            headers={"Stripe-Signature": "t=1,v1=fake", "Content-Type": "application/json"},
        )
    return _post


class FakeGateway:
    """Stands in for leadbilling.services.stripe_gateway; records every call."""

    def __init__(self):
        self.payment_method = "pm_card_visa"
        self.decline = None
        self.requires_action = False
        self.unavailable = False
        self.refund_error = None
        self.on_charge = None
        self.cancel_at = 1893456000  # 2030-01-01
        self.unit_amounts = {"price_basic_monthly": 1900, "price_pro_monthly": 4900, "price_enterprise_monthly": 14900}
        self.charges = []
        self.refunds = []
        self.calls = []

    def find_payment_method(self, customer_id):
        self.calls.append(("find_payment_method", customer_id))
        if self.unavailable:
            raise PaymentPlatformUnavailable("The payment platform is unavailable. Please try again.")
        return self.payment_method if customer_id else None

    def charge_off_session(self, **kwargs):
        self.charges.append(kwargs)
        if self.unavailable:
            raise PaymentPlatformUnavailable("The payment platform is unavailable. Please try again.")
        if self.decline:
            raise ChargeDeclined(self.decline, payment_intent_id="pi_declined", requires_action=self.requires_action)
        if self.on_charge:
            self.on_charge(kwargs)
        return f"pi_test_{len(self.charges)}"

    def refund(self, **kwargs):
        self.refunds.append(kwargs)
        if self.refund_error:
            raise self.refund_error
        return f"re_test_{len(self.refunds)}"

    def schedule_cancel(self, subscription_id):
        self.calls.append(("schedule_cancel", subscription_id))
        return {"id": subscription_id, "status": "active", "cancel_at_period_end": True, "cancel_at": self.cancel_at}

    def reactivate(self, subscription_id):
        self.calls.append(("reactivate", subscription_id))
        return {"id": subscription_id, "status": "active", "cancel_at_period_end": False, "cancel_at": None}

    def cancel_now(self, subscription_id):
        self.calls.append(("cancel_now", subscription_id))
        return {"id": subscription_id, "status": "canceled"}

    def change_plan(self, subscription_id, *, price_id, account_id, tier):
        self.calls.append(("change_plan", subscription_id, price_id, tier))
        return {
            "id": subscription_id,
            "status": "active",
            "metadata": {"account_id": str(account_id), "tier": tier},
            "items": {"data": [{"id": "si_1", "price": {"id": price_id, "unit_amount": self.unit_amounts.get(price_id)}}]},
        }

    def create_checkout_session(self, *, price_id, account_id, tier, customer_id=None):
        self.calls.append(("create_checkout_session", price_id, account_id, tier))
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/c/cs_test_1"}


@pytest.fixture()
def gateway(monkeypatch):
    fake = FakeGateway()
    for name in (
        "find_payment_method", "charge_off_session", "refund", "schedule_cancel",
        "reactivate", "cancel_now", "change_plan", "create_checkout_session",
    ):
        monkeypatch.setattr(stripe_gateway, name, getattr(fake, name))
    return fake
