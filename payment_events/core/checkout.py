"""
Checkout construction.

Builds a hosted checkout for either one catalog product or a bulk list of
items. The integrity token over the priced items is stored in the session
metadata so the completion webhook can detect tampering.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payment_events.core import integrity
from payment_events.core.catalog import Catalog, Product
from payment_events.core.exceptions import CheckoutError
from payment_events.integrations.events import CHECKOUT_ORIGIN, CHECKOUT_ORIGIN_KEY
from payment_events.integrations.stripe_client import PaymentProvider

logger = structlog.get_logger(__name__)


class CheckoutItem(BaseModel):
    """One requested line of a bulk checkout."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


@dataclass(frozen=True)
class CheckoutResult:
    """Where to send the buyer."""

    url: str
    session_id: Optional[str] = None
    integrity_token: Optional[str] = None
    mode: str = "payment"

    @property
    def is_static_link(self) -> bool:
        return self.session_id is None


class CheckoutService:
    """Creates checkout sessions from catalog products."""

    def __init__(self, catalog: Catalog, provider: PaymentProvider):
        self.catalog = catalog
        self.provider = provider

    async def create_checkout(
        self,
        success_url: str,
        cancel_url: str,
        product_id: Optional[str] = None,
        items: Optional[Sequence[Union[CheckoutItem, Mapping[str, Any]]]] = None,
        user_id: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Create a checkout for a single product or a list of items.

        Args:
            success_url: Redirect after payment
            cancel_url: Redirect on cancel
            product_id: Catalog id or alias (single-product checkout)
            items: Requested lines (bulk checkout)
            user_id: Account the purchase belongs to

        Returns:
            CheckoutResult: Hosted session URL, or the product's static payment link

        Raises:
            CheckoutError: If the request is malformed or mixes incompatible products
            UnknownProduct: If a product id is not in the catalog
            ProviderError: If the provider rejects the session
        """
        if (product_id is None) == (items is None):
            raise CheckoutError("Provide exactly one of product_id or items")

        if product_id is not None:
            return await self._single(self.catalog.resolve(product_id), success_url, cancel_url, user_id)
        return await self._bulk(self._parse_items(items or []), success_url, cancel_url, user_id)

    async def _single(
        self,
        product: Product,
        success_url: str,
        cancel_url: str,
        user_id: Optional[str],
    ) -> CheckoutResult:
        if product.payment_link:
            logger.info("checkout_static_link", product_id=product.id)
            return CheckoutResult(
                url=product.payment_link,
                mode="subscription" if product.is_subscription else "payment",
            )

        token = integrity.compute_token(
            [integrity.PricedItem(product_id=product.id, quantity=1, unit_amount=product.amount)]
        )
        metadata = {"integrity_token": token, "product_id": product.id}
        return await self._create_session(
            [(product, 1)], metadata, token, success_url, cancel_url, user_id
        )

    async def _bulk(
        self,
        items: List[CheckoutItem],
        success_url: str,
        cancel_url: str,
        user_id: Optional[str],
    ) -> CheckoutResult:
        lines = [(self.catalog.resolve(item.product_id), item.quantity) for item in items]

        subscriptions = [p.id for p, _ in lines if p.is_subscription]
        if subscriptions:
            raise CheckoutError(
                f"Subscription products cannot be bought in bulk: {', '.join(subscriptions)}"
            )
        currencies = {p.currency for p, _ in lines}
        if len(currencies) > 1:
            raise CheckoutError(f"Items must share one currency, got {', '.join(sorted(currencies))}")

        priced = [
            integrity.PricedItem(product_id=p.id, quantity=qty, unit_amount=p.amount)
            for p, qty in lines
        ]
        token = integrity.compute_token(priced)
        metadata = {
            "integrity_token": token,
            "items": integrity.encode_items_metadata(priced),
        }
        return await self._create_session(lines, metadata, token, success_url, cancel_url, user_id)

    async def _create_session(
        self,
        lines: List[tuple[Product, int]],
        metadata: Dict[str, str],
        token: str,
        success_url: str,
        cancel_url: str,
        user_id: Optional[str],
    ) -> CheckoutResult:
        if user_id:
            metadata["user_id"] = user_id
        mode = "subscription" if any(p.is_subscription for p, _ in lines) else "payment"

        session = await self.provider.create_checkout_session(
            mode=mode,
            line_items=[self._line_item(p, qty) for p, qty in lines],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            client_reference_id=user_id,
            payment_intent_metadata=self._payment_intent_metadata(mode, user_id),
        )
        if not session.url:
            raise CheckoutError("Provider returned a session without a URL")

        logger.info(
            "checkout_session_ready",
            session_id=session.id,
            mode=mode,
            line_count=len(lines),
            user_id=user_id,
        )
        return CheckoutResult(url=session.url, session_id=session.id, integrity_token=token, mode=mode)

    @staticmethod
    def _payment_intent_metadata(mode: str, user_id: Optional[str]) -> Optional[Dict[str, str]]:
        """Tag one-off checkout payments so their intent events are not handled twice."""
        if mode != "payment":
            return None
        metadata = {CHECKOUT_ORIGIN_KEY: CHECKOUT_ORIGIN}
        if user_id:
            metadata["user_id"] = user_id
        return metadata

    @staticmethod
    def _line_item(product: Product, quantity: int) -> Dict[str, Any]:
        price_data: Dict[str, Any] = {
            "currency": product.currency,
            "unit_amount": product.amount,
            "product_data": {"name": product.name, "metadata": {"product_id": product.id}},
        }
        if product.interval:
            price_data["recurring"] = {"interval": product.interval}
        return {"price_data": price_data, "quantity": quantity}

    @staticmethod
    def _parse_items(items: Sequence[Union[CheckoutItem, Mapping[str, Any]]]) -> List[CheckoutItem]:
        if not items:
            raise CheckoutError("At least one item is required")
        try:
            return [
                item if isinstance(item, CheckoutItem) else CheckoutItem.model_validate(item)
                for item in items
            ]
        except ValidationError as e:
            raise CheckoutError(f"Invalid checkout items: {e.errors()[0]['msg']}")
