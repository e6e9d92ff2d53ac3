"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Event deduplication using Redis
- Event type routing to registered handlers
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from otw_orders.config import Settings, get_settings
from otw_orders.domain import MisconfiguredServiceError, OrderError, OrderValidationError
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[Dict[str, Any]]]


class WebhookSignatureError(OrderValidationError):
    """Raised when a webhook payload fails signature verification."""

    default_message = "Invalid webhook signature"


class WebhookProcessingError(OrderError):
    """Raised when a registered handler fails; Stripe will redeliver."""

    status_code = 500
    default_message = "Webhook processing failed"


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and processing.

    Features:
    - Signature verification using Stripe webhook secrets
    - Event deduplication (store processed webhook IDs in Redis)
    - Event type routing to appropriate handlers

    Deduplication is best-effort: if Redis is unavailable the event is
    processed anyway, which is safe because every handler is idempotent.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for event deduplication
            settings: Optional settings (defaults to cached settings)
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.event_handlers: Dict[str, EventHandler] = {}

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'checkout.session.completed')
            handler: Async callable receiving the event's data object
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            MisconfiguredServiceError: If no webhook secret is configured
            WebhookSignatureError: If signature verification fails
        """
        webhook_secret = self.settings.stripe_webhook_secret
        if not webhook_secret:
            logger.error("webhook_secret_not_configured")
            raise MisconfiguredServiceError()
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise WebhookSignatureError()
        except ValueError as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise WebhookSignatureError("Invalid webhook payload")

        logger.info(
            "webhook_signature_verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            event_id: Stripe event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            redis = await self._ensure_redis()
            exists = await redis.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # If Redis is down, process the event anyway to avoid losing it
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """
        Mark webhook event as processed.

        Args:
            event_id: Stripe event ID
        """
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                f"webhook:processed:{event_id}",
                self.settings.webhook_dedup_ttl_seconds,
                "1",
            )
            logger.info("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: Any) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Verified Stripe event

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            WebhookProcessingError: If the registered handler fails
        """
        event_id = event["id"]
        event_type = event["type"]
        start = time.perf_counter()

        logger.info(
            "processing_webhook_event",
            event_id=event_id,
            event_type=event_type,
        )

        # Check for duplicate events
        if await self.is_event_processed(event_id):
            logger.info(
                "webhook_event_already_processed",
                event_id=event_id,
                event_type=event_type,
            )
            metrics.record_webhook_event(event_type, "duplicate", time.perf_counter() - start)
            return {
                "status": "duplicate",
                "event_id": event_id,
                "message": "Event already processed",
            }

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info(
                "webhook_no_handler",
                event_id=event_id,
                event_type=event_type,
            )
            # Mark as processed even if no handler to avoid reprocessing
            await self.mark_event_processed(event_id)
            metrics.record_webhook_event(event_type, "no_handler", time.perf_counter() - start)
            return {
                "status": "no_handler",
                "event_id": event_id,
                "event_type": event_type,
            }

        try:
            result = await handler(event["data"]["object"])
        except Exception as e:
            metrics.record_webhook_event(event_type, "failed", time.perf_counter() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise WebhookProcessingError()

        await self.mark_event_processed(event_id)
        metrics.record_webhook_event(event_type, "success", time.perf_counter() - start)

        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
        )

        return {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
