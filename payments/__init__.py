"""Payment collaborators: Stripe confirmation and the read-only ledger."""

from .ledger import PaymentLedger
from .stripe import create_payment_intent, handle_webhook, verify_webhook_event

__all__ = ["PaymentLedger", "create_payment_intent", "handle_webhook", "verify_webhook_event"]
