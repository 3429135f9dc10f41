"""
Event Ledger: at-most-once application of Stripe events.

record_event is check-and-insert in one statement (the unique key on
event_id arbitrates concurrent deliveries); the fallback reclaim is a single
conditional UPDATE, so two deliveries can never both come back is_new.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from leadbilling.extensions import db
from leadbilling.models import WebhookEvent
from leadbilling.models.webhook_event import (
    EVENT_FAILED,
    EVENT_PENDING,
    EVENT_PROCESSED,
    EVENT_PROCESSING,
    TERMINAL_STATUSES,
)
from leadbilling.observability import log_event
from leadbilling.utils.helpers import utcnow


@dataclass(frozen=True)
class LedgerEntry:
    is_new: bool
    status: str


def _lease() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("WEBHOOK_PROCESSING_LEASE_SECONDS", 300)))


def record_event(
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    refs: Optional[Dict[str, Optional[str]]] = None,
    *,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    now = now or utcnow()
    refs = refs or {}
    db.session.add(WebhookEvent(
        event_id=event_id,
        type=event_type,
        payload=payload,
        status=EVENT_PROCESSING,
        attempts=1,
        customer_ref=refs.get("customer_ref"),
        subscription_ref=refs.get("subscription_ref"),
        invoice_ref=refs.get("invoice_ref"),
        processing_started_at=now,
        created_at=now,
        updated_at=now,
    ))
    try:
        db.session.commit()
        return LedgerEntry(is_new=True, status=EVENT_PROCESSING)
    except IntegrityError:
        db.session.rollback()

    # Seen before. Pending, or processing past its lease (handler died), is taken over.
    stuck = and_(
        WebhookEvent.status == EVENT_PROCESSING,
        or_(WebhookEvent.processing_started_at.is_(None), WebhookEvent.processing_started_at <= now - _lease()),
    )
    result = db.session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id, or_(WebhookEvent.status == EVENT_PENDING, stuck))
        .values(
            status=EVENT_PROCESSING,
            processing_started_at=now,
            attempts=WebhookEvent.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount == 1:
        log_event("webhook_reclaimed", level=logging.WARNING, event_id=event_id, type=event_type)
        return LedgerEntry(is_new=True, status=EVENT_PROCESSING)

    status = db.session.execute(
        select(WebhookEvent.status).where(WebhookEvent.event_id == event_id)
    ).scalar_one()
    log_event("webhook_duplicate", event_id=event_id, type=event_type, status=status)
    return LedgerEntry(is_new=False, status=status)


def _finish(event_id: str, status: str, **values) -> bool:
    now = utcnow()
    result = db.session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id, WebhookEvent.status.not_in(TERMINAL_STATUSES))
        .values(status=status, processed_at=now, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def mark_processed(event_id: str, notes: Optional[str] = None) -> bool:
    """Terminal and idempotent: False (no-op) when the entry is already terminal."""
    return _finish(event_id, EVENT_PROCESSED, notes=(notes or "")[:255] or None)


def mark_failed(event_id: str, reason: str) -> bool:
    done = _finish(event_id, EVENT_FAILED, error_message=(reason or "unknown")[:500])
    if done:
        log_event("webhook_failed", level=logging.ERROR, event_id=event_id, reason=reason)
    return done


def get_entry(event_id: str) -> Optional[WebhookEvent]:
    return db.session.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id)
    ).scalar_one_or_none()


def failed_events(limit: int = 50) -> List[WebhookEvent]:
    return list(db.session.execute(
        select(WebhookEvent)
        .where(WebhookEvent.status == EVENT_FAILED)
        .order_by(WebhookEvent.created_at.desc())
        .limit(limit)
    ).scalars())
