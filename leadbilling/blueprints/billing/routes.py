from flask import current_app, jsonify, request
from sqlalchemy import select

from . import bp
from leadbilling.billing import actions, gate
from leadbilling.billing.errors import UnknownAccount, ValidationFailed
from leadbilling.billing.grace import grace_status
from leadbilling.extensions import db, limiter
from leadbilling.models import Account, Payment
from leadbilling.models.payment import KIND_INVOICE, KIND_LEAD_FEE, KIND_REFUND
from leadbilling.services.policy import require_internal_caller
from leadbilling.utils.helpers import safe_int


MAX_PAGE_SIZE = 100
PAYMENT_KINDS = {KIND_LEAD_FEE, KIND_INVOICE, KIND_REFUND}


def _claim_limit():
    return current_app.config.get("CLAIM_RATE_LIMIT", "30/minute")


def _account_or_404(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise UnknownAccount(account_id)
    return account


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationFailed("Expected a JSON object body.")
    return body


@bp.post("/leads/claim")
@require_internal_caller
@limiter.limit(_claim_limit)
def claim_lead():
    body = _json_body()
    account_id = safe_int(body.get("accountId"))
    if account_id is None:
        raise ValidationFailed("accountId is required")
    result = gate.claim(account_id, body.get("leadId"))
    return jsonify(result.to_dict()), 200


@bp.get("/accounts/<int:account_id>/fee")
@require_internal_caller
def lead_fee(account_id: int):
    return jsonify(gate.fee_info(_account_or_404(account_id))), 200


@bp.get("/accounts/<int:account_id>/grace")
@require_internal_caller
def grace(account_id: int):
    return jsonify(grace_status(_account_or_404(account_id))), 200


@bp.get("/accounts/<int:account_id>/payments")
@require_internal_caller
def payments(account_id: int):
    """Payment history, newest first. `startingAfter` is the last id of the previous page."""
    _account_or_404(account_id)
    limit = min(max(safe_int(request.args.get("limit"), 20), 1), MAX_PAGE_SIZE)
    kind = (request.args.get("kind") or "").strip().lower()
    if kind and kind not in PAYMENT_KINDS:
        raise ValidationFailed(f"kind must be one of: {', '.join(sorted(PAYMENT_KINDS))}")

    query = select(Payment).where(Payment.account_id == account_id)
    if kind:
        query = query.where(Payment.kind == kind)
    starting_after = safe_int(request.args.get("startingAfter"))
    if starting_after is not None:
        query = query.where(Payment.id < starting_after)
    rows = db.session.execute(query.order_by(Payment.id.desc()).limit(limit + 1)).scalars().all()
    return jsonify({
        "payments": [p.to_dict() for p in rows[:limit]],
        "hasMore": len(rows) > limit,
    }), 200


@bp.post("/accounts/<int:account_id>/cancel")
@require_internal_caller
def cancel(account_id: int):
    return jsonify(actions.cancel_subscription(account_id)), 200


@bp.post("/accounts/<int:account_id>/reactivate")
@require_internal_caller
def reactivate(account_id: int):
    return jsonify(actions.reactivate_subscription(account_id)), 200


@bp.post("/accounts/<int:account_id>/tier")
@require_internal_caller
def change_tier(account_id: int):
    body = _json_body()
    return jsonify(actions.change_tier(account_id, body.get("tier"))), 200
