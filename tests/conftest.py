"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Set, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_events.bootstrap import PaymentCore, build_core
from payment_events.config import Settings
from payment_events.core.catalog import Catalog
from payment_events.database.connection import close_db, create_engine, create_session_factory, init_db
from payment_events.integrations.stripe_client import ProviderCharge, ProviderRefund, ProviderSession

WEBHOOK_SECRET = "whsec_test_fake_secret"

CATALOG = {
    "products": [
        {"id": "lore_pack", "name": "Lore Pack", "amount": 500, "currency": "usd"},
        {"id": "sticker_pack", "name": "Sticker Pack", "amount": 1000, "currency": "usd"},
        {
            "id": "premium_monthly",
            "name": "Premium",
            "amount": 999,
            "currency": "usd",
            "interval": "month",
        },
        {
            "id": "founder_pass",
            "name": "Founder Pass",
            "amount": 4900,
            "currency": "usd",
            "payment_link": "https://buy.stripe.test/founder",
        },
        {"id": "euro_pack", "name": "Euro Pack", "amount": 700, "currency": "EUR"},
    ],
    "aliases": {"premium": "premium_monthly", "lore": "lore_pack"},
}


class FakeProvider:
    """In-memory PaymentProvider recording every call."""

    def __init__(self) -> None:
        self.sessions: List[Dict[str, Any]] = []
        self.charge_attempts: List[Dict[str, Any]] = []
        self.refund_attempts: List[Dict[str, Any]] = []
        self.charge_errors: List[Exception] = []
        self.refund_errors: List[Exception] = []
        self.line_items: Dict[str, List[Dict[str, Any]]] = {}
        self.line_item_errors: List[Exception] = []
        self.line_item_requests: List[str] = []

    async def create_checkout_session(
        self,
        mode: str,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        client_reference_id: Optional[str] = None,
        payment_intent_metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderSession:
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append(
            {
                "id": session_id,
                "mode": mode,
                "line_items": line_items,
                "metadata": dict(metadata),
                "client_reference_id": client_reference_id,
                "payment_intent_metadata": payment_intent_metadata,
            }
        )
        return ProviderSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def list_checkout_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        self.line_item_requests.append(session_id)
        if self.line_item_errors:
            raise self.line_item_errors.pop(0)
        return self.line_items.get(session_id, [])

    async def create_charge(
        self,
        amount: int,
        currency: str,
        source: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderCharge:
        self.charge_attempts.append(
            {
                "amount": amount,
                "currency": currency,
                "source": source,
                "metadata": dict(metadata or {}),
                "idempotency_key": idempotency_key,
            }
        )
        if self.charge_errors:
            raise self.charge_errors.pop(0)
        return ProviderCharge(
            id=f"ch_test_{len(self.charge_attempts)}",
            status="succeeded",
            amount=amount,
            currency=currency,
        )

    async def create_refund(
        self,
        charge_id: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderRefund:
        self.refund_attempts.append({"charge_id": charge_id, "idempotency_key": idempotency_key})
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        return ProviderRefund(
            id=f"re_test_{len(self.refund_attempts)}",
            status="succeeded",
            amount=500,
            charge_id=charge_id,
        )


class OutboundRecorder:
    """httpx MockTransport handler for notification and promotion calls."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.failing_hosts: Set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host in self.failing_hosts:
            return httpx.Response(500, json={"error": "unavailable"})
        return httpx.Response(200, json={"ok": True})

    def to_host(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def bodies(self, host: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.to_host(host)]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite:///:memory:",
        discord_webhook_url="https://discord.test/api/webhooks/1/abc",
        sendgrid_api_key="SG.test",
        sendgrid_api_url="https://sendgrid.test/v3/mail/send",
        promotion_api_url="https://promo.test/promote",
        app_name="payment-events-test",
        app_env="test",
        log_level="DEBUG",
        gateway_base_delay=1.0,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def catalog() -> Catalog:
    return Catalog.from_dict(CATALOG)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def outbound() -> OutboundRecorder:
    return OutboundRecorder()


@pytest_asyncio.fixture
async def http_client(outbound: OutboundRecorder) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(outbound)) as client:
        yield client


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the gateway between attempts."""
    return []


@pytest_asyncio.fixture
async def core(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    provider: FakeProvider,
    catalog: Catalog,
    sleeps: List[float],
) -> AsyncGenerator[PaymentCore, Any]:
    """Fully wired core over SQLite, the fake provider and mocked outbound HTTP."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    payment_core = build_core(
        test_settings,
        session_factory=session_factory,
        http_client=http_client,
        provider=provider,
        catalog=catalog,
        sleep=record_sleep,
    )
    yield payment_core
    await payment_core.aclose()


@pytest.fixture
def make_event() -> Callable[..., Dict[str, Any]]:
    """Build a provider event envelope around a subject object."""

    def _make(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }

    return _make


def sign_payload(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``t=...,v1=...`` header the way the provider signs deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def webhook_signer() -> Callable[..., str]:
    """Signature-header builder for arbitrary bodies and secrets."""
    return sign_payload


@pytest.fixture
def signed_delivery() -> Callable[..., Tuple[bytes, str]]:
    """Serialize an event and sign it with the test endpoint secret."""

    def _sign(event: Dict[str, Any], timestamp: Optional[int] = None) -> Tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        return body, sign_payload(body, WEBHOOK_SECRET, timestamp=timestamp)

    return _sign


@pytest.fixture
def checkout_session() -> Callable[..., Dict[str, Any]]:
    """A ``checkout.session.completed`` subject object."""

    def _session(
        session_id: str = "cs_test_1",
        amount_total: int = 500,
        metadata: Optional[Dict[str, str]] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        obj: Dict[str, Any] = {
            "id": session_id,
            "object": "checkout.session",
            "mode": "payment",
            "amount_total": amount_total,
            "currency": "usd",
            "payment_intent": f"pi_{session_id}",
            "customer_email": "buyer@example.com",
            "metadata": metadata or {},
        }
        obj.update(extra)
        return obj

    return _session
