"""
Stripe API client.

The Stripe SDK is synchronous, so every call runs in a worker thread via
``asyncio.to_thread``. SDK errors are classified into TransientProviderError
(retried by the gateway) and PermanentProviderError (surfaced at once).
Retrying itself is the gateway's job, not this client's.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

import stripe
import structlog

from payment_events.core.exceptions import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (
    stripe.RateLimitError,
    stripe.APIConnectionError,
    stripe.APIError,
)


@dataclass(frozen=True)
class ProviderSession:
    """A hosted checkout session."""

    id: str
    url: Optional[str]


@dataclass(frozen=True)
class ProviderCharge:
    id: str
    status: str
    amount: int
    currency: str


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount: int
    charge_id: str


class PaymentProvider(Protocol):
    """Operations the core needs from a payment provider."""

    async def create_checkout_session(
        self,
        mode: str,
        line_items: list[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        client_reference_id: Optional[str] = None,
        payment_intent_metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderSession:
        ...

    async def list_checkout_line_items(self, session_id: str) -> list[Dict[str, Any]]:
        ...

    async def create_charge(
        self,
        amount: int,
        currency: str,
        source: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderCharge:
        ...

    async def create_refund(
        self,
        charge_id: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderRefund:
        ...


def classify_error(error: Exception) -> ProviderError:
    """
    Map an SDK exception onto the provider error hierarchy.

    Rate limits, connection failures and provider-side 5xx are transient;
    card declines, invalid requests and authentication errors are permanent.
    """
    code = getattr(error, "code", None)
    if isinstance(error, TRANSIENT_ERRORS):
        return TransientProviderError(str(error), original_error=error, provider_code=code)
    return PermanentProviderError(str(error), original_error=error, provider_code=code)


class StripeClient:
    """PaymentProvider backed by the Stripe SDK."""

    def __init__(self, api_key: str, api_version: Optional[str] = None):
        """
        Initialize Stripe client.

        Args:
            api_key: Secret key (``sk_test_...`` or ``sk_live_...``)
            api_version: Pinned API version
        """
        self.api_key = api_key
        self.api_version = api_version

        logger.info(
            "stripe_client_initialized",
            api_version=api_version,
            test_mode=api_key.startswith("sk_test_"),
        )

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.api_key}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    async def _run(self, operation: str, func: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(func)
        except stripe.StripeError as e:
            error = classify_error(e)
            logger.error(
                "stripe_api_error",
                operation=operation,
                transient=isinstance(error, TransientProviderError),
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise error from e

    async def create_checkout_session(
        self,
        mode: str,
        line_items: list[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        client_reference_id: Optional[str] = None,
        payment_intent_metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderSession:
        """
        Create a hosted Checkout Session.

        Args:
            mode: ``payment`` or ``subscription``
            line_items: Stripe ``line_items`` with inline ``price_data``
            success_url: Redirect after payment
            cancel_url: Redirect on cancel
            metadata: Round-tripped session metadata
            client_reference_id: Account the session belongs to
            payment_intent_metadata: Metadata for the PaymentIntent (payment mode only)

        Returns:
            ProviderSession: Session id and hosted URL
        """
        logger.info("creating_checkout_session", mode=mode, line_count=len(line_items))

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "mode": mode,
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
            }
            if client_reference_id:
                kwargs["client_reference_id"] = client_reference_id
            if payment_intent_metadata and mode == "payment":
                kwargs["payment_intent_data"] = {"metadata": payment_intent_metadata}
            return stripe.checkout.Session.create(**kwargs, **self._request_options())

        session = await self._run("create_checkout_session", _create)
        logger.info("checkout_session_created", session_id=session.id)
        return ProviderSession(id=session.id, url=getattr(session, "url", None))

    async def list_checkout_line_items(self, session_id: str) -> list[Dict[str, Any]]:
        """
        Line items actually charged on a Checkout Session.

        Prices come back with their product expanded so the catalog id set at
        session creation (``product_data.metadata.product_id``) is available.

        Returns:
            list: Line items shaped like the ``line_items.data`` of an expanded event
        """

        def _list() -> Any:
            return stripe.checkout.Session.list_line_items(
                session_id,
                limit=100,
                expand=["data.price.product"],
                **self._request_options(),
            )

        listing = await self._run("list_checkout_line_items", _list)
        items = []
        for item in listing.data:
            price = item.price
            product = getattr(price, "product", None)
            catalog_id = (getattr(product, "metadata", None) or {}).get("product_id")
            items.append(
                {
                    "quantity": item.quantity,
                    "amount_total": item.amount_total,
                    "price": {
                        "unit_amount": price.unit_amount,
                        "product": getattr(product, "id", product),
                        "metadata": {"product_id": catalog_id} if catalog_id else {},
                    },
                }
            )
        logger.info("checkout_line_items_listed", session_id=session_id, line_count=len(items))
        return items

    async def create_charge(
        self,
        amount: int,
        currency: str,
        source: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderCharge:
        """
        Create a direct charge.

        Raises:
            TransientProviderError: On rate limits and connectivity failures
            PermanentProviderError: On declines and invalid requests
        """
        logger.info("creating_charge", amount=amount, currency=currency)

        def _create() -> Any:
            return stripe.Charge.create(
                amount=amount,
                currency=currency.lower(),
                source=source,
                description=description,
                metadata=metadata or {},
                **self._request_options(idempotency_key),
            )

        charge = await self._run("create_charge", _create)
        logger.info("charge_created", charge_id=charge.id, status=charge.status)
        return ProviderCharge(
            id=charge.id,
            status=charge.status,
            amount=charge.amount,
            currency=charge.currency,
        )

    async def create_refund(
        self,
        charge_id: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderRefund:
        """
        Refund a charge in full.

        Raises:
            TransientProviderError: On rate limits and connectivity failures
            PermanentProviderError: On invalid requests
        """
        logger.info("creating_refund", charge_id=charge_id)

        def _create() -> Any:
            return stripe.Refund.create(
                charge=charge_id,
                metadata=metadata or {},
                **self._request_options(idempotency_key),
            )

        refund = await self._run("create_refund", _create)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return ProviderRefund(
            id=refund.id,
            status=refund.status,
            amount=refund.amount,
            charge_id=charge_id,
        )
