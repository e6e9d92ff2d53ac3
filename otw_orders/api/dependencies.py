"""
FastAPI dependency providers.

Long-lived clients (store, Stripe gateway, Redis, identity resolver, the
routed webhook handler) are created once per process; services composed from
them are cheap and built per request, so tests can override any provider with
``app.dependency_overrides``.
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from fastapi import Depends, Header, Request

from otw_orders.config import Settings, get_settings
from otw_orders.core.checkout_events import CheckoutEventHandlers
from otw_orders.core.checkout_session import CheckoutSessionGateway
from otw_orders.core.identity import IdentityResolver
from otw_orders.core.order_service import OrderService
from otw_orders.core.payment_verifier import PaymentVerifier
from otw_orders.core.reconciliation import SessionReconciler
from otw_orders.database.order_store import OrderStore
from otw_orders.integrations.stripe_gateway import StripeGateway
from otw_orders.integrations.webhook_handler import WebhookHandler
from otw_orders.monitoring.health import HealthCheck

_clients: Dict[str, Any] = {}


def _singleton(name: str, factory: Any) -> Any:
    if name not in _clients:
        _clients[name] = factory()
    return _clients[name]


def get_app_settings() -> Settings:
    return get_settings()


def get_order_store() -> OrderStore:
    return _singleton("order_store", OrderStore)


def get_payment_gateway() -> StripeGateway:
    return _singleton("payment_gateway", StripeGateway)


def get_identity_resolver() -> IdentityResolver:
    return _singleton("identity_resolver", IdentityResolver.from_settings)


def get_redis_client() -> aioredis.Redis:
    settings = get_settings()
    return _singleton(
        "redis",
        lambda: aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True),
    )


def get_health_check() -> HealthCheck:
    return _singleton("health_check", HealthCheck)


async def close_clients() -> None:
    """Release process-wide clients on shutdown."""
    redis_client = _clients.pop("redis", None)
    if redis_client is not None:
        await redis_client.aclose()
    _clients.clear()


def get_order_service(
    store: OrderStore = Depends(get_order_store),
    settings: Settings = Depends(get_app_settings),
) -> OrderService:
    return OrderService(store, settings)


def get_checkout_gateway(
    store: OrderStore = Depends(get_order_store),
    gateway: StripeGateway = Depends(get_payment_gateway),
    settings: Settings = Depends(get_app_settings),
) -> CheckoutSessionGateway:
    return CheckoutSessionGateway(store, gateway, settings)


def get_payment_verifier(
    store: OrderStore = Depends(get_order_store),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> PaymentVerifier:
    return PaymentVerifier(store, gateway)


def get_reconciler(
    store: OrderStore = Depends(get_order_store),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    settings: Settings = Depends(get_app_settings),
) -> SessionReconciler:
    return SessionReconciler(store, verifier, settings)


def get_webhook_handler(
    store: OrderStore = Depends(get_order_store),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    redis_client: aioredis.Redis = Depends(get_redis_client),
    settings: Settings = Depends(get_app_settings),
) -> WebhookHandler:
    """Built and routed once per process, on the first delivery."""

    def build() -> WebhookHandler:
        handler = WebhookHandler(redis_client=redis_client, settings=settings)
        return CheckoutEventHandlers(store, verifier).register(handler)

    return _singleton("webhook_handler", build)


def get_owner_id(
    authorization: Optional[str] = Header(default=None),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> Optional[str]:
    """Owner id for the caller, None for a guest."""
    return resolver.resolve(resolver.parse_authorization_header(authorization))


def require_owner_id(
    authorization: Optional[str] = Header(default=None),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> str:
    return resolver.require(resolver.parse_authorization_header(authorization))


def require_admin(
    authorization: Optional[str] = Header(default=None),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    settings: Settings = Depends(get_app_settings),
) -> str:
    return resolver.require_role(
        resolver.parse_authorization_header(authorization), settings.admin_role
    )


def get_request_metadata(request: Request) -> Dict[str, Any]:
    forwarded_for = request.headers.get("x-forwarded-for")
    client_ip = (
        forwarded_for.split(",")[0].strip()
        if forwarded_for
        else request.headers.get("x-real-ip")
        or (request.client.host if request.client else "unknown")
    )
    return {
        "userAgent": request.headers.get("user-agent", ""),
        "ip": client_ip,
    }
