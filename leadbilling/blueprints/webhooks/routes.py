import hashlib
import json

import stripe
from flask import abort, current_app, jsonify, request

from . import bp
from leadbilling.billing import reconcile
from leadbilling.extensions import limiter
from leadbilling.observability import log_event


# ----- Stripe Webhook (subscriptions lifecycle, dunning) -----
@limiter.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Verifies signature, records the event in the ledger, reconciles billing state.
    Anything past signature verification is acknowledged with 200.
    """
    # 1) Verify signature before anything touches the database
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        abort(500, description="Stripe webhook secret not configured")

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except (ValueError, UnicodeDecodeError, stripe.SignatureVerificationError):
        # deterministic digest so repeated bad deliveries can be correlated (no payload trust)
        log_event("stripe_signature_invalid", digest=hashlib.sha256(raw_bytes).hexdigest()[:32])
        return jsonify({"error": "invalid_signature"}), 400

    # 2) Plain dict from the verified body
    payload = json.loads(raw_bytes.decode("utf-8"))
    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        return jsonify({"error": "malformed_event"}), 400

    # 3) Ledger -> resolver -> mark
    return jsonify(reconcile.handle_event(payload)), 200
