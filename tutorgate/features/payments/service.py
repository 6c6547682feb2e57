"""
Payment event processing.

Maps verified payment events onto the activation code registry:
- checkout completed        -> issue a code for the purchase
- subscription deleted,
  refund, dispute           -> revoke the purchase's codes (downgrade cascade)
- subscription updated      -> schedule or clear a period-end downgrade

Processing is idempotent on the provider's event id (payment_events table).
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from tutorgate.core.clock import utc_now
from tutorgate.core.config import settings
from tutorgate.core.database import get_db_session, payment_events
from tutorgate.features.activation.service import (
    issue_activation_code,
    linked_identities_for_purchase,
    list_codes_for_purchase,
    revoke_activation_code,
    set_next_billing,
)
from tutorgate.features.identity.service import clear_scheduled_downgrade, schedule_downgrade
from tutorgate.features.payments.provider import (
    CHECKOUT_COMPLETED,
    REVOKING_EVENTS,
    SUBSCRIPTION_UPDATED,
    PaymentEvent,
    PaymentProvider,
    PaymentProviderError,
    PaymentWebhookError,
)
from tutorgate.features.payments.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)


@dataclass
class PaymentEventOutcome:
    """What processing a payment event did."""
    event_id: str
    event_type: str
    action: str  # issued, revoked, downgrade_scheduled, downgrade_cleared, ignored, duplicate
    code: Optional[str] = None
    revoked_codes: List[str] = field(default_factory=list)
    identities: List[str] = field(default_factory=list)


def payments_enabled() -> bool:
    """Check if payments are enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if payments are enabled."""
    if not payments_enabled():
        return None
    try:
        return StripeProvider(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        )
    except PaymentProviderError:
        return None


def _payload_hash(event: PaymentEvent) -> str:
    body = event.raw_body or json.dumps(
        {"id": event.event_id, "type": event.event_type, "purchase_id": event.purchase_id},
        sort_keys=True,
    ).encode("utf-8")
    return hashlib.sha256(body).hexdigest()


def _reclaim_failed_event(event_id: str) -> bool:
    """Take over a delivery whose earlier processing failed. False if it is processed or in flight."""
    with get_db_session() as session:
        result = session.execute(
            update(payment_events)
            .where(
                payment_events.c.event_id == event_id,
                payment_events.c.processed.is_(False),
                payment_events.c.error.is_not(None),
            )
            .values(error=None, received_at=utc_now())
        )
        return result.rowcount == 1


def _claim_event(event: PaymentEvent) -> bool:
    """Record the event id. False if it was already recorded (duplicate delivery).

    A recorded event whose processing failed is claimed again, so a provider
    redelivery retries it.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(payment_events.c.processed, payment_events.c.error)
            .where(payment_events.c.event_id == event.event_id)
        ).first()
    if existing:
        if existing.processed or existing.error is None:
            return False
        reclaimed = _reclaim_failed_event(event.event_id)
        if reclaimed:
            logger.info("[payments] retrying failed event", extra={"event_id": event.event_id, "event_type": event.event_type})
        return reclaimed

    try:
        with get_db_session() as session:
            session.execute(
                insert(payment_events).values(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payload_hash=_payload_hash(event),
                    processed=False,
                    received_at=utc_now(),
                )
            )
    except IntegrityError:
        # Race condition: another worker already inserted this event
        return False
    return True


def _mark_event(event_id: str, *, error: Optional[str] = None) -> None:
    if error is not None:
        values: Dict[str, object] = {"error": error}
    else:
        values = {"processed": True, "processed_at": utc_now(), "error": None}
    with get_db_session() as session:
        session.execute(
            update(payment_events).where(payment_events.c.event_id == event_id).values(**values)
        )


def _apply(event: PaymentEvent) -> PaymentEventOutcome:
    outcome = PaymentEventOutcome(event_id=event.event_id, event_type=event.event_type, action="ignored")
    if not event.purchase_id:
        logger.warning("[payments] event without purchase id", extra={"event_type": event.event_type})
        return outcome

    if event.event_type == CHECKOUT_COMPLETED:
        existing = list_codes_for_purchase(event.purchase_id)
        if existing:
            outcome.action = "issued"
            outcome.code = existing[0].code
            return outcome
        outcome.code = issue_activation_code(
            event.purchase_id,
            event.owner_contact,
            next_billing_at=event.period_end,
        )
        outcome.action = "issued"
        return outcome

    if event.event_type in REVOKING_EVENTS:
        result = revoke_activation_code(event.purchase_id)
        outcome.action = "revoked"
        outcome.revoked_codes = list(result.revoked_codes)
        outcome.identities = list(result.downgraded_identities)
        return outcome

    if event.event_type == SUBSCRIPTION_UPDATED:
        linked = linked_identities_for_purchase(event.purchase_id)
        outcome.identities = linked
        if event.cancel_at_period_end and event.period_end:
            schedule_downgrade(linked, event.period_end)
            outcome.action = "downgrade_scheduled"
        else:
            set_next_billing(event.purchase_id, event.period_end)
            clear_scheduled_downgrade(linked, next_billing_at=event.period_end)
            outcome.action = "downgrade_cleared"
        return outcome

    return outcome


def process_payment_event(event: PaymentEvent) -> PaymentEventOutcome:
    """
    Process a verified payment event (idempotent).

    1. Record the event id (skip if already handled, retry if it failed before)
    2. Apply the activation state change
    3. Mark as processed, or store the error and re-raise
    """
    if not _claim_event(event):
        logger.info("[payments] duplicate event skipped", extra={"event_id": event.event_id, "event_type": event.event_type})
        return PaymentEventOutcome(event_id=event.event_id, event_type=event.event_type, action="duplicate")

    try:
        outcome = _apply(event)
    except Exception as e:
        _mark_event(event.event_id, error=str(e) or type(e).__name__)
        logger.error(
            "[payments] event failed",
            exc_info=True,
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        raise

    _mark_event(event.event_id)
    logger.info(
        "[payments] event processed",
        extra={"event_id": event.event_id, "event_type": event.event_type, "action": outcome.action},
    )
    return outcome


def process_webhook(headers: Dict[str, str], body: bytes) -> PaymentEventOutcome:
    """
    Verify, parse and process a provider webhook.

    Raises:
        PaymentWebhookError: If payments are disabled or the signature is invalid
    """
    provider = get_provider()
    if not provider:
        raise PaymentWebhookError("Payments not enabled")
    event = provider.handle_webhook(headers, body)
    return process_payment_event(event)
