"""
Stripe payment confirmation for booked slots.

A client books with ``awaiting_payment`` set, pays through a payment
intent created here, and Stripe calls back through the webhook. Only then
is the booking confirmation sent.
"""

import asyncio
from typing import Any, Dict, Optional

import stripe
from stripe import PaymentIntent, SignatureVerificationError, StripeError

from config import settings
from models.slot import PaymentStatus, Slot
from notifications.templates import NotificationKind
from utils.constants import SLOT_ID_DISPLAY_LENGTH
from utils.exceptions import DatabaseError, WebhookVerificationError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="payments.log")

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key

# Retry configuration
_MAX_RETRIES = 3
_RETRY_DELAY = 1.0  # seconds
_RETRY_BACKOFF = 2.0  # exponential backoff multiplier


def _amount_in_minor_units(price: float) -> int:
    return int(round(price * 100))


async def create_payment_intent(slot: Slot, price: float) -> PaymentIntent:
    """
    Create a Stripe payment intent for a booked slot.

    Uses a worker thread to avoid blocking the event loop. Server-side and
    network failures are retried with exponential backoff; client errors
    (4xx) are not.

    Args:
        slot: The booked slot (its ID goes into the intent metadata)
        price: Amount to charge, in major currency units

    Returns:
        Stripe PaymentIntent object

    Raises:
        ValueError: If the slot is unbooked or the price is not positive
        RuntimeError: If the Stripe API call fails after retries
    """
    if not slot.id or not slot.client_id:
        raise ValueError("Payment intents can only be created for booked slots")
    if price <= 0:
        raise ValueError(f"Invalid amount: {price} must be positive")

    delay = _RETRY_DELAY
    last_error: Optional[Exception] = None

    for attempt in range(_MAX_RETRIES):
        try:
            payment_intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=_amount_in_minor_units(price),
                currency=settings.currency,
                metadata={
                    "slot_id": slot.id,
                    "client_id": slot.client_id,
                },
                description=f"Appointment {slot.id[:SLOT_ID_DISPLAY_LENGTH]}",
                automatic_payment_methods={"enabled": True},
            )

            logger.info(f"Created payment intent {payment_intent.id} for slot {slot.id}")
            return payment_intent

        except StripeError as e:
            last_error = e
            # Don't retry on client errors (4xx), only on server errors (5xx) or network issues
            if e.http_status and 400 <= e.http_status < 500:
                logger.error(
                    f"Stripe client error creating payment intent for slot {slot.id}: {e}",
                    exc_info=True,
                )
                raise RuntimeError(f"Payment processing error: {e}") from e

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error (attempt {attempt + 1}/{_MAX_RETRIES}) for slot {slot.id}: {e}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error creating payment intent for slot {slot.id} "
                    f"after {_MAX_RETRIES} attempts: {e}",
                    exc_info=True,
                )
                raise RuntimeError(
                    f"Payment processing error after {_MAX_RETRIES} attempts: {e}"
                ) from e

    raise RuntimeError(f"Failed to create payment intent: {last_error}") from last_error


def verify_webhook_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verify a Stripe webhook signature and decode the event.

    Raises:
        WebhookVerificationError: If the secret is missing or the signature is invalid
    """
    if not settings.stripe_webhook_secret:
        raise WebhookVerificationError("Stripe webhook secret is not configured")
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(
            payload, signature, settings.stripe_webhook_secret
        )
    except (ValueError, SignatureVerificationError) as e:
        raise WebhookVerificationError(f"Invalid webhook payload: {e}") from e

    return event


async def handle_webhook(event_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    ``payment_intent.succeeded`` marks the slot paid and sends the booking
    confirmation that was deferred at booking time. ``charge.refunded``
    marks it refunded.

    Args:
        event_data: Stripe webhook event data

    Returns:
        Response dict
    """
    event_type = event_data.get("type")
    payload = event_data.get("data", {}).get("object")

    if not payload:
        return {"status": "error", "message": "Invalid webhook data"}

    slot_id = (payload.get("metadata") or {}).get("slot_id")
    if not slot_id:
        logger.warning(f"Webhook {event_type} received without slot_id")
        return {"status": "ignored", "message": "No slot_id in metadata"}

    if event_type == "payment_intent.succeeded":
        status = PaymentStatus.PAID
        payment_id = payload.get("id")
    elif event_type == "charge.refunded":
        status = PaymentStatus.REFUNDED
        payment_id = payload.get("payment_intent")
    elif event_type == "payment_intent.payment_failed":
        logger.warning(f"Payment failed for slot {slot_id}")
        return {"status": "failed", "slot_id": slot_id}
    else:
        return {"status": "processed", "event_type": event_type}

    from db import get_db_client
    from notifications import get_dispatcher

    db = get_db_client()

    try:
        slot = await db.mark_payment(slot_id, status, payment_id)
    except DatabaseError as e:
        logger.error(f"Could not record {status.value} payment for slot {slot_id}: {e}")
        return {"status": "error", "slot_id": slot_id, "message": str(e)}

    if slot is None:
        logger.warning(f"Payment event {event_type} for missing or unbooked slot {slot_id}")
        return {"status": "ignored", "slot_id": slot_id, "message": "Slot not booked"}

    logger.info(f"Slot {slot_id} marked {status.value} (payment {payment_id})")

    if status == PaymentStatus.PAID:
        await get_dispatcher().notify_parties(slot, NotificationKind.CONFIRMATION)

    return {"status": "success", "slot_id": slot_id, "payment_status": status.value}
