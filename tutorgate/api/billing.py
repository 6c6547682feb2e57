"""
Billing API routes.

Minimal surface:
- POST /api/billing/webhook: Handle Stripe webhooks (issue / revoke activation codes)
"""
from fastapi import APIRouter, Request

from tutorgate.core.errors import ServiceUnavailableError, ValidationError
from tutorgate.features.payments.provider import PaymentWebhookError
from tutorgate.features.payments.service import payments_enabled, process_webhook


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently and updates activation codes.

    Signature verification uses STRIPE_WEBHOOK_SECRET.
    Event deduplication uses the event id (stored in payment_events table).

    Returns:
        {"received": true, "event_id": ..., "action": ...}

    Errors:
        400: Invalid signature or payload
        503: Payments disabled
    """
    if not payments_enabled():
        raise ServiceUnavailableError("Stripe is not configured", code="payments_disabled")

    # Read raw body (required for signature verification)
    body = await request.body()
    headers = dict(request.headers)

    try:
        outcome = process_webhook(headers, body)
    except PaymentWebhookError as e:
        raise ValidationError(str(e), code="invalid_webhook")

    return {"received": True, "event_id": outcome.event_id, "action": outcome.action}
