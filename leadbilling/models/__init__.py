from .account import Account
from .subscription import Subscription
from .webhook_event import WebhookEvent
from .payment import Payment
from .lead_claim import LeadClaim

__all__ = ["Account", "Subscription", "WebhookEvent", "Payment", "LeadClaim"]
