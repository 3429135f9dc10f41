"""
Dunning emails. Sent only after the billing transition has committed; a mail
failure is logged and never propagates into webhook processing.
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app, render_template
from flask_mail import Message

from leadbilling.extensions import mail
from leadbilling.observability import log_event
from leadbilling.utils.helpers import absolute_url


def _base_context(account) -> Dict[str, Any]:
    return {
        "product_name": current_app.config.get("PRODUCT_NAME", "Lead Billing"),
        "support_email": current_app.config.get("SUPPORT_EMAIL"),
        "business_name": account.name or "Business Owner",
        "billing_url": absolute_url("billing"),
    }


def send_email(to_email: str, subject: str, template: str, context: Optional[Dict[str, Any]] = None) -> bool:
    """
    template: basename under templates/email/ without extension (e.g., 'payment_failed')
    Renders both HTML and plaintext.
    """
    context = context or {}
    msg = Message(recipients=[to_email], subject=subject)
    msg.body = render_template(f"email/{template}.txt", **context)
    msg.html = render_template(f"email/{template}.html", **context)

    start = time.perf_counter()
    try:
        mail.send(msg)
    except Exception as ex:  # SMTP/socket errors vary by backend
        log_event("mail_send", level=logging.WARNING, template=template, to=to_email.lower(),
                  outcome="smtp_error", smtp_error=str(ex),
                  latency_ms=int((time.perf_counter() - start) * 1000))
        return False
    log_event("mail_send", template=template, to=to_email.lower(), outcome="sent",
              latency_ms=int((time.perf_counter() - start) * 1000))
    return True


def _fmt(dt: Optional[datetime]) -> str:
    return dt.strftime("%B %d, %Y") if dt else ""


def send_payment_failed(account, *, attempt: int, max_attempts: int, grace_period_end: Optional[datetime],
                        invoice_id: Optional[str]) -> bool:
    if not account.billing_email:
        return False
    ctx = _base_context(account)
    ctx.update(attempt=attempt, max_attempts=max_attempts, grace_period_end=_fmt(grace_period_end), invoice_id=invoice_id)
    return send_email(account.billing_email, f"Payment failed (attempt {attempt} of {max_attempts})", "payment_failed", ctx)


def send_final_warning(account, *, grace_period_end: Optional[datetime]) -> bool:
    if not account.billing_email:
        return False
    ctx = _base_context(account)
    ctx.update(grace_period_end=_fmt(grace_period_end))
    return send_email(account.billing_email, "Final notice: update your payment method", "final_warning", ctx)


def send_downgraded(account, *, previous_tier: str) -> bool:
    if not account.billing_email:
        return False
    ctx = _base_context(account)
    ctx.update(previous_tier=previous_tier)
    return send_email(account.billing_email, "Your plan has been changed to Free", "downgraded", ctx)
