"""
Payment provider protocol.

Defines the interface the webhook route needs from a payment provider
(Stripe, etc.) so the activation flow does not depend on one vendor.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


# Event types the activation flow reacts to
CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
CHARGE_REFUNDED = "charge.refunded"
DISPUTE_CREATED = "charge.dispute.created"

REVOKING_EVENTS = frozenset({SUBSCRIPTION_DELETED, CHARGE_REFUNDED, DISPUTE_CREATED})


@dataclass
class PaymentEvent:
    """A verified payment event, normalized across providers."""
    event_id: str
    event_type: str
    purchase_id: Optional[str]
    owner_contact: Optional[str] = None
    cancel_at_period_end: bool = False
    period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_body: bytes = b""


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle webhook signature verification and parsing.
    Checkout pages themselves are hosted by the provider.
    """

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            Parsed payment event

        Raises:
            PaymentWebhookError: If signature invalid or parsing fails
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Exception for webhook processing errors."""
    pass
