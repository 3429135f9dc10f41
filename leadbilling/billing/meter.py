"""
Credit Meter.

try_consume is one conditional UPDATE: cycle rollover, tier expiry, the
limit lookup and the increment are all evaluated by the database against the
row as it is at write time. Never read-then-write the counter in Python.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import and_, case, literal, or_, select, update

from .errors import UnknownAccount
from .tiers import TIER_CREDIT_LIMITS, UNLIMITED, Tier, credit_limit
from leadbilling.extensions import db
from leadbilling.models import Account
from leadbilling.observability import log_event
from leadbilling.utils.helpers import utcnow


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    credits_used: int
    credit_limit: int
    tier: Tier


def cycle_length() -> timedelta:
    return timedelta(days=int(current_app.config.get("LEAD_CREDIT_CYCLE_DAYS", 30)))


def _limit_expr(now: datetime):
    expired = and_(Account.tier_expires_at.is_not(None), Account.tier_expires_at <= now)
    whens = [(expired, TIER_CREDIT_LIMITS[Tier.FREE])]
    whens += [(Account.tier == tier.value, limit) for tier, limit in TIER_CREDIT_LIMITS.items()]
    return case(*whens, else_=TIER_CREDIT_LIMITS[Tier.FREE])


def try_consume(account_id: int, *, now: Optional[datetime] = None, paid: bool = False) -> ConsumeResult:
    """
    Consume one credit if the cycle's quota allows it (always, when `paid`:
    the lead fee has already been charged). Flushes only; the caller commits.
    """
    now = now or utcnow()
    rolled = Account.credits_reset_at <= now - cycle_length()
    limit = _limit_expr(now)

    conditions = [Account.id == account_id]
    if not paid:
        conditions.append(or_(limit == UNLIMITED, rolled, Account.credits_used < limit))

    result = db.session.execute(
        update(Account)
        .where(*conditions)
        .values(
            credits_used=case((rolled, 1), else_=Account.credits_used + 1),
            credits_reset_at=case((rolled, literal(now, Account.credits_reset_at.type)), else_=Account.credits_reset_at),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    allowed = result.rowcount == 1

    row = db.session.execute(
        select(Account.tier, Account.tier_expires_at, Account.credits_used, Account.credits_reset_at)
        .where(Account.id == account_id)
    ).one_or_none()
    if row is None:
        raise UnknownAccount(account_id)

    tier = _effective(row.tier, row.tier_expires_at, now)
    used = row.credits_used
    if not allowed and row.credits_reset_at <= now - cycle_length():
        used = 0
    log_event(
        "credit_consumed" if allowed else "credit_rejected",
        account_id=account_id, tier=tier.value, credits_used=used, paid=paid,
    )
    return ConsumeResult(allowed=allowed, credits_used=used, credit_limit=credit_limit(tier), tier=tier)


def _effective(tier: str, expires_at: Optional[datetime], now: datetime) -> Tier:
    if expires_at is not None and expires_at <= now:
        return Tier.FREE
    return Tier.parse(tier) or Tier.FREE


def credits_used_now(account: Account, now: Optional[datetime] = None) -> int:
    """Counter as the next consume would see it (0 once the cycle has rolled over)."""
    now = now or utcnow()
    if account.credits_reset_at is not None and account.credits_reset_at <= now - cycle_length():
        return 0
    return account.credits_used
