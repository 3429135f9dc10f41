from typing import Any, Dict, Optional

GENERIC_RETRY_MESSAGE = "Something went wrong. Please try again."
ADD_PAYMENT_METHOD_MESSAGE = (
    "No payment method on file. Please add a card in Billing settings before claiming leads."
)


class BillingError(RuntimeError):
    """Recoverable billing error surfaced to the caller as JSON."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or GENERIC_RETRY_MESSAGE
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "error": self.message, "code": self.code}
        payload.update({k: v for k, v in self.extra.items() if v is not None})
        return payload


class ValidationFailed(BillingError):
    status_code = 400
    code = "invalid_request"


class UnknownAccount(BillingError):
    status_code = 404
    code = "unknown_account"

    def __init__(self, account_id: Any):
        super().__init__("Account not found")
        self.account_id = account_id


class PaymentRequired(BillingError):
    """Quota exhausted and no charge could be made; the caller may retry after fixing payment."""
    status_code = 402
    code = "payment_required"

    def __init__(self, message: str, *, needs_payment_method: bool, fee_cents: Optional[int] = None):
        super().__init__(message, needsPaymentMethod=needs_payment_method, feeCents=fee_cents)
        self.needs_payment_method = needs_payment_method
        self.fee_cents = fee_cents


class PaymentPlatformUnavailable(BillingError):
    """Stripe unreachable/timeout/rate limited; nothing was changed locally."""
    status_code = 503
    code = "payment_platform_unavailable"


class ClaimFailed(BillingError):
    status_code = 500
    code = "claim_failed"


class ChargeDeclined(Exception):
    """Raised by the gateway when Stripe refuses the charge; message is Stripe's decline reason."""

    def __init__(self, message: str, *, payment_intent_id: Optional[str] = None, requires_action: bool = False):
        super().__init__(message)
        self.message = message
        self.payment_intent_id = payment_intent_id
        self.requires_action = requires_action
