"""
Purchase ledger.

Turns verified ``checkout.session.completed`` events into Purchase rows with a
single ``INSERT ... ON CONFLICT (session_id) DO UPDATE``, so any number of
deliveries of the same event leave exactly one row with the same content.
The update only fires when a delivery carries different content, so a plain
re-delivery does not even touch ``updated_at``.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core import integrity
from payment_events.core.catalog import Catalog
from payment_events.core.exceptions import IntegrityMismatch, ProviderError
from payment_events.database.connection import insert_for
from payment_events.database.models import Purchase, utcnow
from payment_events.integrations.events import (
    CheckoutLineItem,
    CheckoutSessionObject,
    WebhookEvent,
)
from payment_events.integrations.stripe_client import PaymentProvider
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_CURRENCY = "usd"


@dataclass
class _Line:
    product_id: str
    quantity: int
    unit_amount: Optional[int]
    line_total: int = 0
    estimated: bool = False


class PurchaseLedger:
    """Records completed checkouts idempotently."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        provider: Optional[PaymentProvider] = None,
    ):
        """
        Initialize ledger.

        Args:
            session_factory: Factory for database sessions
            catalog: Catalog used to price lines the event does not price
            provider: Source of line items for bulk sessions whose event omits them
        """
        self.session_factory = session_factory
        self.catalog = catalog
        self.provider = provider

    async def record_completed_checkout(self, event: WebhookEvent) -> Purchase:
        """
        Upsert the Purchase for a completed checkout session.

        Args:
            event: Verified ``checkout.session.completed`` event

        Returns:
            Purchase: The stored row after the upsert
        """
        session = CheckoutSessionObject.model_validate(event.subject)
        log = logger.bind(session_id=session.id, event_id=event.id)

        fetched = await self._fetch_line_items(session)
        lines = self._collect_lines(session, fetched)
        amount_total = session.amount_total
        if amount_total is None:
            amount_total = sum((line.unit_amount or 0) * line.quantity for line in lines)
        self._price_lines(lines, amount_total)

        token = session.metadata.get("integrity_token")
        priced = [
            integrity.PricedItem(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_amount=line.unit_amount or 0,
            )
            for line in lines
        ]
        token_valid = integrity.verify(token, priced)
        lines_total = sum(line.line_total for line in lines)
        amount_matches = bool(lines) and lines_total == amount_total
        integrity_valid = token_valid and amount_matches
        if not integrity_valid:
            log.warning(
                "purchase_integrity_mismatch",
                error_code=IntegrityMismatch.CODE,
                token_present=bool(token),
                token_valid=token_valid,
                amount_total=amount_total,
                lines_total=lines_total,
            )
            metrics.record_integrity_mismatch()

        is_bulk = "items" in session.metadata or len(lines) > 1
        now = utcnow()
        values: Dict[str, Any] = {
            "session_id": session.id,
            "mode": session.mode if session.mode in ("payment", "subscription") else "payment",
            "amount_total": amount_total,
            "currency": self._currency(session, lines),
            "product_id": None if is_bulk else (lines[0].product_id if lines else None),
            "items": [self._line_dict(line) for line in lines] if is_bulk else None,
            "user_id": session.user_id,
            "integrity_token": token,
            "integrity_valid": integrity_valid,
            "raw_event": event.model_dump(mode="json"),
            "created_at": now,
            "updated_at": now,
        }

        content = [key for key in values if key not in ("session_id", "created_at", "updated_at")]
        async with self.session_factory() as db:
            stmt = insert_for(db, Purchase).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Purchase.session_id],
                set_={key: stmt.excluded[key] for key in content + ["updated_at"]},
                where=or_(
                    *(
                        getattr(Purchase, key).is_distinct_from(stmt.excluded[key])
                        for key in content
                    )
                ),
            )
            await db.execute(stmt)
            await db.commit()

            purchase = await db.get(Purchase, session.id, populate_existing=True)

        log.info(
            "purchase_recorded",
            amount_total=amount_total,
            bulk=is_bulk,
            integrity_valid=integrity_valid,
        )
        return purchase

    async def get(self, session_id: str) -> Optional[Purchase]:
        """Purchase for a session id, or None."""
        async with self.session_factory() as db:
            return await db.get(Purchase, session_id)

    async def _fetch_line_items(self, session: CheckoutSessionObject) -> List[CheckoutLineItem]:
        """
        Ask the provider for the line items of a bulk session.

        Completion events do not include line items unless expanded, and the
        compact metadata alone cannot show what was actually charged. Provider
        failures fall back to the metadata; the total check still applies.
        """
        if self.provider is None or session.expanded_line_items:
            return []
        if "items" not in session.metadata:
            return []
        try:
            raw = await self.provider.list_checkout_line_items(session.id)
        except ProviderError as e:
            logger.warning(
                "purchase_line_items_unavailable",
                session_id=session.id,
                error_code=e.error_code,
            )
            return []
        return [CheckoutLineItem.model_validate(item) for item in raw]

    def _collect_lines(
        self, session: CheckoutSessionObject, fetched: List[CheckoutLineItem]
    ) -> List[_Line]:
        """Line items from the event or provider, else from the checkout metadata."""
        expanded = session.expanded_line_items or fetched
        if expanded:
            return [
                _Line(
                    product_id=self.catalog.canonical_id(item.product_id or "unknown"),
                    quantity=item.quantity,
                    unit_amount=item.unit_amount,
                )
                for item in expanded
            ]

        compact = session.metadata.get("items")
        if compact:
            try:
                pairs = integrity.decode_items_metadata(compact)
            except ValueError as e:
                logger.warning("purchase_items_metadata_invalid", session_id=session.id, error=str(e))
                return []
            return [
                _Line(product_id=self.catalog.canonical_id(pid), quantity=qty, unit_amount=None)
                for pid, qty in pairs
            ]

        product_id = session.metadata.get("product_id")
        if product_id:
            # Single-product sessions are priced by the session total itself.
            return [
                _Line(
                    product_id=self.catalog.canonical_id(product_id),
                    quantity=1,
                    unit_amount=session.amount_total,
                )
            ]
        return []

    def _price_lines(self, lines: List[_Line], amount_total: int) -> None:
        """
        Fill in unit amounts and line totals.

        Event amount first, then catalog amount. Lines priced by neither share
        what is left of the total: ``floor(remaining_total / remaining_quantity)``
        each, with the last such line absorbing the remainder.
        """
        for line in lines:
            if line.unit_amount is None:
                product = self.catalog.get(line.product_id)
                if product is not None:
                    line.unit_amount = product.amount

        remaining_total = amount_total - sum(
            line.unit_amount * line.quantity for line in lines if line.unit_amount is not None
        )
        remaining_quantity = sum(line.quantity for line in lines if line.unit_amount is None)

        last_estimated: Optional[_Line] = None
        for line in lines:
            if line.unit_amount is None:
                unit = max(remaining_total, 0) // remaining_quantity if remaining_quantity else 0
                line.unit_amount = unit
                line.estimated = True
                remaining_total -= unit * line.quantity
                remaining_quantity -= line.quantity
                last_estimated = line
            line.line_total = line.unit_amount * line.quantity

        if last_estimated is not None and remaining_total > 0:
            last_estimated.line_total += remaining_total

    def _currency(self, session: CheckoutSessionObject, lines: List[_Line]) -> str:
        if session.currency:
            return session.currency.lower()
        for line in lines:
            product = self.catalog.get(line.product_id)
            if product is not None:
                return product.currency
        return DEFAULT_CURRENCY

    @staticmethod
    def _line_dict(line: _Line) -> Dict[str, Any]:
        return {
            "product_id": line.product_id,
            "quantity": line.quantity,
            "unit_amount": line.unit_amount,
            "line_total": line.line_total,
        }
