"""
Integration tests for the HTTP API.
"""
import uuid
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from payment_events.api.main import create_app
from payment_events.bootstrap import PaymentCore
from payment_events.core.job_payloads import JobType, NotifyPayload

CHECKOUT_URLS = {
    "success_url": "https://example.com/success",
    "cancel_url": "https://example.com/cancel",
}


@pytest_asyncio.fixture
async def client(core: PaymentCore) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client bound to an app serving the test core."""
    app = create_app(core)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestWebhookEndpoint:
    """Test suite for POST /webhooks/stripe."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_valid_delivery_acknowledged(
        self, client: httpx.AsyncClient, make_event: Any, signed_delivery: Any
    ) -> None:
        """Test a signed delivery returns 200 with a bare acknowledgement."""
        body, header = signed_delivery(make_event("customer.created", {"id": "cus_1"}))

        response = await client.post(
            "/webhooks/stripe", content=body, headers={"Stripe-Signature": header}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert "X-Request-ID" in response.headers

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(
        self, client: httpx.AsyncClient, make_event: Any, signed_delivery: Any
    ) -> None:
        """Test bad or missing signatures get 400 without details."""
        body, _ = signed_delivery(make_event("customer.created", {"id": "cus_1"}))

        forged = await client.post(
            "/webhooks/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=deadbeef"}
        )
        unsigned = await client.post("/webhooks/stripe", content=body)

        assert forged.status_code == 400
        assert forged.json() == {"received": False}
        assert unsigned.status_code == 400
        assert unsigned.json() == {"received": False}


class TestBillingEndpoints:
    """Test suite for checkout, charge, refund and lore drop routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout(self, client: httpx.AsyncClient) -> None:
        """Test a single-product checkout returns the session URL."""
        response = await client.post("/checkout", json={"product_id": "lore", **CHECKOUT_URLS})

        assert response.status_code == 200
        data = response.json()
        assert data["url"] == "https://checkout.test/cs_test_1"
        assert data["session_id"] == "cs_test_1"
        assert data["mode"] == "payment"
        assert data["static_link"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bulk_checkout(self, client: httpx.AsyncClient) -> None:
        """Test bulk items are accepted."""
        response = await client.post(
            "/checkout",
            json={
                "items": [{"product_id": "lore_pack", "quantity": 2}, {"product_id": "sticker_pack"}],
                **CHECKOUT_URLS,
            },
        )

        assert response.status_code == 200
        assert len(response.json()["integrity_token"]) == 24

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_errors(self, client: httpx.AsyncClient) -> None:
        """Test domain errors render with their status and a safe message."""
        neither = await client.post("/checkout", json=CHECKOUT_URLS)
        unknown = await client.post("/checkout", json={"product_id": "nope", **CHECKOUT_URLS})

        assert neither.status_code == 400
        assert neither.json() == {
            "error": {
                "code": "invalid_checkout",
                "message": "Provide exactly one of product_id or items",
            }
        }
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "unknown_product"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_charge_created(self, client: httpx.AsyncClient) -> None:
        """Test a charge returns 201 with the provider charge."""
        response = await client.post(
            "/charges",
            json={"user_id": "u1", "amount": 500, "currency": "USD", "source": "tok_visa"},
        )

        assert response.status_code == 201
        assert response.json() == {
            "id": "ch_test_1",
            "status": "succeeded",
            "amount": 500,
            "currency": "usd",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_charge_over_free_tier(self, client: httpx.AsyncClient, provider: Any) -> None:
        """Test the free-tier ceiling maps to 403."""
        response = await client.post(
            "/charges",
            json={"user_id": "u1", "amount": 100001, "currency": "usd", "source": "tok_visa"},
        )

        assert response.status_code == 403
        assert response.json() == {
            "error": {
                "code": "quota_exceeded",
                "message": "Charge amount exceeds free tier limit of 100000",
            }
        }
        assert provider.charge_attempts == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_charge_with_coupon(self, client: httpx.AsyncClient) -> None:
        """Test a coupon brings an over-ceiling amount under it."""
        response = await client.post(
            "/charges",
            json={
                "user_id": "u1",
                "amount": 150000,
                "currency": "usd",
                "source": "tok_visa",
                "coupon": "HALFOFF",
            },
        )

        assert response.status_code == 201
        assert response.json()["amount"] == 75000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validation_error_shape(self, client: httpx.AsyncClient) -> None:
        """Test request validation failures use the common error shape."""
        response = await client.post(
            "/charges",
            json={"user_id": "u1", "amount": 0, "currency": "usd", "source": "tok_visa"},
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "invalid_request"
        assert error["message"].startswith("amount")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/refunds", json={"charge_id": "ch_1", "user_id": "u1"})

        assert response.status_code == 201
        assert response.json() == {
            "refund_id": "re_test_1",
            "charge_id": "ch_1",
            "status": "succeeded",
            "amount": 500,
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lore_drops(self, client: httpx.AsyncClient) -> None:
        """Test lore drops are metered and refused past the allowance."""
        for expected in range(1, 11):
            response = await client.post("/lore-drops", json={"user_id": "u1"})
            assert response.status_code == 200
            assert response.json() == {"user_id": "u1", "tier": "free", "count": expected, "limit": 10}

        denied = await client.post("/lore-drops", json={"user_id": "u1"})

        assert denied.status_code == 403
        assert denied.json()["error"]["message"] == "free tier lore_drop limit of 10 reached"


class TestJobEndpoints:
    """Test suite for job inspection and replay."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_job(self, client: httpx.AsyncClient, core: PaymentCore) -> None:
        job = await core.jobs.enqueue(JobType.NOTIFY, NotifyPayload(kind="payment", message="hi"))

        response = await client.get(f"/jobs/{job.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(job.id)
        assert data["status"] == "done"
        assert data["outcome"]["delivered"] == ["discord"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replay_terminal_job_conflicts(
        self, client: httpx.AsyncClient, core: PaymentCore
    ) -> None:
        """Test finished jobs cannot be replayed."""
        job = await core.jobs.notify("payment", message="hi")

        response = await client.post(f"/jobs/{job.id}/replay")

        assert response.status_code == 409
        assert response.json() == {
            "error": {"code": "job_not_replayable", "message": "Job is already done."}
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_job(self, client: httpx.AsyncClient) -> None:
        missing = await client.get(f"/jobs/{uuid.uuid4()}")
        malformed = await client.post("/jobs/not-a-uuid/replay")

        assert missing.status_code == 404
        assert malformed.status_code == 404
        assert missing.json()["error"]["code"] == "job_not_found"


class TestMonitoringEndpoints:
    """Test suite for health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["jobs"]["pending"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_probes(self, client: httpx.AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        """Test Prometheus exposition includes the core's metrics."""
        await client.post("/lore-drops", json={"user_id": "u1"})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "quota_decisions_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")

        assert response.json()["service"] == "payment-events"
