from datetime import datetime, timedelta

from leadbilling.billing import ledger
from leadbilling.extensions import db
from leadbilling.models import WebhookEvent

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _payload(event_id="evt_ledger_1"):
    return {"id": event_id, "type": "invoice.payment_succeeded", "data": {"object": {"id": "in_1"}}}


def test_first_sighting_is_new_and_processing(app):
    with app.app_context():
        entry = ledger.record_event("evt_ledger_1", "invoice.payment_succeeded", _payload(),
                                    {"customer_ref": "cus_1", "subscription_ref": "sub_1", "invoice_ref": "in_1"}, now=T0)
        assert entry.is_new is True
        assert entry.status == "processing"

        row = ledger.get_entry("evt_ledger_1")
        assert row.status == "processing"
        assert row.customer_ref == "cus_1"
        assert row.subscription_ref == "sub_1"
        assert row.invoice_ref == "in_1"
        assert row.payload["id"] == "evt_ledger_1"


def test_concurrent_duplicate_inside_lease_is_not_new(app):
    with app.app_context():
        assert ledger.record_event("evt_ledger_1", "x", _payload(), now=T0).is_new
        again = ledger.record_event("evt_ledger_1", "x", _payload(), now=T0 + timedelta(seconds=5))
        assert again.is_new is False
        assert again.status == "processing"
        assert db.session.query(WebhookEvent).count() == 1


def test_processed_event_is_skipped(app):
    with app.app_context():
        ledger.record_event("evt_ledger_1", "x", _payload(), now=T0)
        assert ledger.mark_processed("evt_ledger_1", notes="free->pro") is True

        again = ledger.record_event("evt_ledger_1", "x", _payload(), now=T0 + timedelta(hours=1))
        assert again.is_new is False
        assert again.status == "processed"


def test_failed_event_is_skipped(app):
    with app.app_context():
        ledger.record_event("evt_ledger_1", "x", _payload(), now=T0)
        ledger.mark_failed("evt_ledger_1", "RuntimeError: boom")

        again = ledger.record_event("evt_ledger_1", "x", _payload(), now=T0 + timedelta(days=1))
        assert again.is_new is False
        assert again.status == "failed"


def test_terminal_marks_are_idempotent_and_exclusive(app):
    with app.app_context():
        ledger.record_event("evt_ledger_1", "x", _payload(), now=T0)
        assert ledger.mark_processed("evt_ledger_1") is True
        # second terminal transition of either kind is a no-op, not an error
        assert ledger.mark_processed("evt_ledger_1") is False
        assert ledger.mark_failed("evt_ledger_1", "late failure") is False

        row = ledger.get_entry("evt_ledger_1")
        assert row.status == "processed"
        assert row.error_message is None
        assert row.processed_at is not None


def test_stuck_processing_entry_is_reclaimed_after_lease(app):
    lease = app.config["WEBHOOK_PROCESSING_LEASE_SECONDS"]
    with app.app_context():
        ledger.record_event("evt_ledger_1", "x", _payload(), now=T0)
        # handler crashed; the redelivery comes after the lease expired
        again = ledger.record_event("evt_ledger_1", "x", _payload(), now=T0 + timedelta(seconds=lease + 1))
        assert again.is_new is True
        assert again.status == "processing"

        row = ledger.get_entry("evt_ledger_1")
        assert row.attempts == 2

        # only one of two racing redeliveries wins the reclaim
        third = ledger.record_event("evt_ledger_1", "x", _payload(), now=T0 + timedelta(seconds=lease + 2))
        assert third.is_new is False


def test_failed_events_lists_only_failures(app):
    with app.app_context():
        for i in range(3):
            ledger.record_event(f"evt_{i}", "x", _payload(f"evt_{i}"), now=T0 + timedelta(minutes=i))
        ledger.mark_failed("evt_0", "KeyError: 'data'")
        ledger.mark_processed("evt_1")
        ledger.mark_failed("evt_2", "RuntimeError: boom")

        rows = ledger.failed_events(limit=10)
        assert [r.event_id for r in rows] == ["evt_2", "evt_0"]
        assert rows[0].error_message == "RuntimeError: boom"
        assert len(ledger.failed_events(limit=1)) == 1
