"""
Composition root.

``build_core`` wires every component from a Settings object. Nothing in the
package holds module-level instances; the API and the workers each build
their own core, and tests build one over SQLite with fakes for the provider
and outbound HTTP.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_events.config import Settings
from payment_events.core.catalog import Catalog
from payment_events.core.charges import ChargeService
from payment_events.core.checkout import CheckoutService
from payment_events.core.gateway import RetryingGateway
from payment_events.core.jobs import Dispatcher, JobQueue
from payment_events.core.ledger import PurchaseLedger
from payment_events.core.quota import QuotaEnforcer
from payment_events.database.connection import close_db, create_engine, create_session_factory
from payment_events.integrations.notifiers import (
    DiscordChannel,
    EmailChannel,
    NotificationChannel,
    PromotionClient,
)
from payment_events.integrations.stripe_client import PaymentProvider, StripeClient
from payment_events.integrations.webhook_handler import WebhookHandler
from payment_events.integrations.webhook_verifier import WebhookVerifier
from payment_events.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class PaymentCore:
    """Every wired component, plus the resources the core owns."""

    settings: Settings
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    catalog: Catalog
    provider: PaymentProvider
    gateway: RetryingGateway
    jobs: JobQueue
    ledger: PurchaseLedger
    quota: QuotaEnforcer
    checkout: CheckoutService
    charges: ChargeService
    verifier: WebhookVerifier
    webhooks: WebhookHandler
    health: HealthCheck
    _owned: List[Callable[[], Awaitable[Any]]] = field(default_factory=list, repr=False)

    async def aclose(self) -> None:
        """Release the HTTP client and engine if this core created them."""
        for close in reversed(self._owned):
            await close()
        self._owned.clear()
        logger.info("payment_core_closed")


def build_channels(settings: Settings, client: httpx.AsyncClient) -> List[NotificationChannel]:
    """Notification channels enabled by configuration."""
    channels: List[NotificationChannel] = []
    if settings.discord_webhook_url:
        channels.append(DiscordChannel(settings.discord_webhook_url, client))
    if settings.sendgrid_api_key:
        channels.append(
            EmailChannel(
                api_key=settings.sendgrid_api_key,
                sender=settings.notification_email_from,
                client=client,
                api_url=settings.sendgrid_api_url,
            )
        )
    return channels


def load_catalog(settings: Settings) -> Catalog:
    if settings.catalog_path:
        catalog = Catalog.from_file(settings.catalog_path)
        logger.info("catalog_loaded", path=settings.catalog_path, products=len(catalog))
        return catalog
    logger.warning("catalog_not_configured")
    return Catalog([])


def build_core(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    provider: Optional[PaymentProvider] = None,
    catalog: Optional[Catalog] = None,
    dispatcher: Optional[Dispatcher] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PaymentCore:
    """
    Wire the payment-event core.

    Args:
        settings: Application settings
        session_factory: Existing session factory (an engine is created from settings otherwise)
        http_client: Outbound HTTP client for notifications and promotion
        provider: Payment provider (Stripe from settings otherwise)
        catalog: Product catalog (loaded from ``settings.catalog_path`` otherwise)
        dispatcher: Job dispatcher (inline processing otherwise)
        sleep: Async sleep used between gateway retries

    Returns:
        PaymentCore: The wired components
    """
    owned: List[Callable[[], Awaitable[Any]]] = []

    engine: Optional[AsyncEngine] = None
    if session_factory is None:
        engine = create_engine(settings)
        session_factory = create_session_factory(engine)
        owned.append(lambda: close_db(engine))

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        owned.append(http_client.aclose)

    if provider is None:
        provider = StripeClient(settings.stripe_secret_key, settings.stripe_api_version)

    if catalog is None:
        catalog = load_catalog(settings)

    gateway = RetryingGateway(
        max_attempts=settings.gateway_max_attempts,
        base_delay=settings.gateway_base_delay,
        deadline_seconds=settings.gateway_deadline_seconds,
        sleep=sleep,
    )
    jobs = JobQueue(
        session_factory,
        channels=build_channels(settings, http_client),
        promotion=PromotionClient(settings.promotion_api_url, http_client),
        dispatcher=dispatcher,
    )
    ledger = PurchaseLedger(session_factory, catalog, provider)
    quota = QuotaEnforcer(session_factory, jobs)
    verifier = WebhookVerifier(
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )

    core = PaymentCore(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        catalog=catalog,
        provider=provider,
        gateway=gateway,
        jobs=jobs,
        ledger=ledger,
        quota=quota,
        checkout=CheckoutService(catalog, provider),
        charges=ChargeService(
            provider,
            gateway,
            quota,
            jobs,
            free_tier_max_charge=settings.free_tier_max_charge,
            coupons=settings.charge_coupons,
        ),
        verifier=verifier,
        webhooks=WebhookHandler(verifier, session_factory, ledger, jobs),
        health=HealthCheck(session_factory, jobs),
        _owned=owned,
    )
    logger.info(
        "payment_core_built",
        app_env=settings.app_env,
        products=len(catalog),
        channels=[c.name for c in jobs.channels],
    )
    return core
