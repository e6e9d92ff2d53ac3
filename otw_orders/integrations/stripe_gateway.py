"""
Stripe Checkout gateway with retry logic and error classification.

Implements:
- Hosted checkout session creation and retrieval
- Explicit per-call timeout (the Stripe SDK is blocking; calls run in a thread)
- Exponential backoff for transient and rate-limit errors
- Circuit breaker pattern
- Idempotency keys on session creation
"""
import asyncio
import functools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from otw_orders.config import Settings, get_settings
from otw_orders.domain import MisconfiguredServiceError, UpstreamGatewayError
from otw_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeGatewayError(UpstreamGatewayError):
    """
    Stripe call failed or timed out.

    The client-facing message stays generic; the Stripe detail is kept on
    ``detail`` for logs.
    """

    def __init__(
        self,
        detail: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__()
        self.detail = detail
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (GatewayErrorType.TRANSIENT, GatewayErrorType.RATE_LIMIT)


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            StripeGatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeGatewayError(
                    "Circuit breaker is open",
                    GatewayErrorType.TRANSIENT,
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def stripe_field(obj: Any, key: str) -> Any:
    """Read an optional field from a Stripe object or a plain dict."""
    return obj[key] if key in obj else None


def stripe_metadata(obj: Any) -> Dict[str, str]:
    """Copy an object's metadata into a plain dict."""
    metadata = stripe_field(obj, "metadata")
    if not metadata:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    return metadata.to_dict()


@dataclass(frozen=True)
class CheckoutSession:
    """A freshly created hosted checkout session."""

    session_id: str
    url: str


@dataclass(frozen=True)
class SessionState:
    """Authoritative state of a checkout session as reported by Stripe."""

    session_id: str
    payment_status: str  # paid, unpaid, no_payment_required
    status: Optional[str]  # open, complete, expired
    amount_total: Optional[int]
    payment_intent_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"

    @classmethod
    def from_stripe(cls, session: Any) -> "SessionState":
        payment_intent = stripe_field(session, "payment_intent")
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent["id"]
        return cls(
            session_id=session["id"],
            payment_status=stripe_field(session, "payment_status") or "unpaid",
            status=stripe_field(session, "status"),
            amount_total=stripe_field(session, "amount_total"),
            payment_intent_id=payment_intent,
            metadata=stripe_metadata(session),
        )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeGatewayError) and error.retryable


_retry_policy = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


class StripeGateway:
    """
    Wrapper for Stripe Checkout with production-grade error handling.

    Features:
    - Automatic retry with exponential backoff
    - Circuit breaker pattern
    - Per-call timeout mapped to a transient error
    - Comprehensive error classification
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=self.settings.stripe_api_version,
            configured=self.settings.stripe_secret_key is not None,
            test_mode=self.settings.is_test_mode,
        )

    def _request_options(self) -> Dict[str, Any]:
        if not self.settings.stripe_secret_key:
            logger.error("stripe_not_configured")
            raise MisconfiguredServiceError()
        return {
            "api_key": self.settings.stripe_secret_key,
            "stripe_version": self.settings.stripe_api_version,
        }

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(
            error,
            (
                stripe.APIConnectionError,
                stripe.APIError,
            ),
        ):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """
        Run a blocking Stripe SDK call under the circuit breaker and timeout.

        Raises:
            StripeGatewayError: On Stripe error or timeout
        """
        self.circuit_breaker.before_call()

        loop = asyncio.get_running_loop()
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, **kwargs)),
                timeout=self.settings.stripe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_call(operation, "timeout", time.perf_counter() - start)
            metrics.record_stripe_api_error(GatewayErrorType.TRANSIENT.value)
            logger.error(
                "stripe_api_timeout",
                operation=operation,
                timeout_seconds=self.settings.stripe_timeout_seconds,
            )
            raise StripeGatewayError(
                f"Stripe {operation} timed out", GatewayErrorType.TRANSIENT
            )
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            error_type = self._classify_error(e)
            metrics.record_stripe_api_call(operation, "error", time.perf_counter() - start)
            metrics.record_stripe_api_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise StripeGatewayError(str(e), error_type, original_error=e)

        self.circuit_breaker.on_success()
        metrics.record_stripe_api_call(operation, "success", time.perf_counter() - start)
        return result

    @_retry_policy
    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted Checkout session.

        Args:
            line_items: Stripe line items
            metadata: Session metadata (string values)
            success_url: Redirect after payment
            cancel_url: Redirect on cancel
            idempotency_key: Same key across retries of one logical create
            customer_email: Optional prefill

        Returns:
            CheckoutSession: Session id and hosted URL

        Raises:
            MisconfiguredServiceError: If no Stripe key is configured
            StripeGatewayError: If session creation fails
        """
        options = self._request_options()

        logger.info(
            "creating_checkout_session",
            order_id=metadata.get("order_id"),
            idempotency_key=idempotency_key,
        )

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "idempotency_key": idempotency_key,
        }
        if customer_email:
            params["customer_email"] = customer_email

        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            **params,
            **options,
        )

        logger.info(
            "checkout_session_created",
            session_id=session["id"],
            order_id=metadata.get("order_id"),
        )

        return CheckoutSession(session_id=session["id"], url=session["url"])

    @_retry_policy
    async def retrieve_session(self, session_id: str) -> SessionState:
        """
        Retrieve a Checkout session's authoritative state.

        Raises:
            MisconfiguredServiceError: If no Stripe key is configured
            StripeGatewayError: If retrieval fails
        """
        options = self._request_options()

        logger.info("retrieving_checkout_session", session_id=session_id)

        session = await self._call(
            "retrieve_session",
            stripe.checkout.Session.retrieve,
            id=session_id,
            **options,
        )
        return SessionState.from_stripe(session)
