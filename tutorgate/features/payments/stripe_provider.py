"""
Stripe payment provider implementation.

Implements PaymentProvider protocol using the Stripe library.
Handles webhook signature verification and event parsing.

purchase_id is the subscription id for subscription checkouts and the
payment intent id for one-off payments, so refunds and disputes (which
only carry the payment intent) map back to the same purchase.
"""
import json
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import stripe

from tutorgate.features.payments.provider import (
    CHECKOUT_COMPLETED,
    CHARGE_REFUNDED,
    DISPUTE_CREATED,
    PaymentEvent,
    PaymentProviderError,
    PaymentWebhookError,
)


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            # Signature verified; the body itself is parsed as plain JSON
            event = json.loads(body)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        parsed = self.parse_event(event)
        parsed.raw_body = body
        return parsed

    def parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        """Parse a Stripe event into a normalized PaymentEvent."""
        event_type = event["type"]
        event_id = event["id"]
        data = event.get("data", {}).get("object", {}) or {}
        metadata = dict(data.get("metadata") or {})

        purchase_id = None
        owner_contact = None
        cancel_at_period_end = False
        period_end = None

        if event_type == CHECKOUT_COMPLETED:
            purchase_id = data.get("subscription") or data.get("payment_intent") or data.get("id")
            details = data.get("customer_details") or {}
            owner_contact = details.get("email") or data.get("customer_email")

        elif event_type.startswith("customer.subscription."):
            purchase_id = data.get("id")
            cancel_at_period_end = bool(data.get("cancel_at_period_end", False))
            period_end = _from_timestamp(data.get("cancel_at")) or _from_timestamp(data.get("current_period_end"))

        elif event_type in (CHARGE_REFUNDED, DISPUTE_CREATED):
            purchase_id = metadata.get("purchase_id") or data.get("payment_intent")

        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            purchase_id=purchase_id,
            owner_contact=owner_contact,
            cancel_at_period_end=cancel_at_period_end,
            period_end=period_end,
            metadata=metadata,
        )
