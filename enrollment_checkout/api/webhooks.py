"""
Stripe webhook handling.

Signed payment_intent events are turned into trusted confirmations. No
separate event deduplication is kept: confirm_payment is idempotent on the
payment intent, so a redelivered event replays the stored outcome.
"""
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog

from enrollment_checkout.core.orchestrator import CheckoutOrchestrator
from enrollment_checkout.domain.models import PaymentStatus

logger = structlog.get_logger(__name__)

OUTCOME_BY_EVENT_TYPE = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
}


class WebhookError(Exception):
    """Raised when a webhook cannot be verified."""

    pass


class StripeWebhookHandler:
    def __init__(self, orchestrator: CheckoutOrchestrator, webhook_secret: Optional[str]):
        self.orchestrator = orchestrator
        self.webhook_secret = webhook_secret

    def verify_signature(self, payload: bytes, signature: str) -> Any:
        """
        Verify webhook signature and construct event.

        Raises:
            WebhookError: If the secret is missing or verification fails
        """
        if not self.webhook_secret:
            raise WebhookError("Webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {str(e)}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {str(e)}") from e

        logger.info("webhook_signature_verified", event_id=event["id"], event_type=event["type"])
        return event

    async def process_event(self, event: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Apply one verified event.

        Unknown event types and intents without an order are acknowledged
        and ignored.
        """
        event_id = event["id"]
        event_type = event["type"]
        outcome = OUTCOME_BY_EVENT_TYPE.get(event_type)
        if outcome is None:
            logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
            return {"status": "ignored", "event_id": event_id, "message": event_type}

        intent = event["data"]["object"]
        metadata = intent.get("metadata") or {}
        order_id = metadata.get("order_id")
        if not order_id:
            logger.warning("webhook_intent_without_order", event_id=event_id, intent_id=intent["id"])
            return {"status": "ignored", "event_id": event_id, "message": "no order_id in metadata"}

        result = await self.orchestrator.confirm_payment(
            order_id, intent["id"], outcome, trusted=True
        )
        logger.info(
            "webhook_event_processed",
            event_id=event_id,
            event_type=event_type,
            order_id=order_id,
            already_processed=result.already_processed,
        )
        return {
            "status": "duplicate" if result.already_processed else "processed",
            "event_id": event_id,
            "message": result.order.status.value,
        }
