"""
Provider webhook handling.

Implements:
- Signature verification (WebhookVerifier)
- Event deduplication through the ``webhook_events`` receipt table
- Routing by event type to the ledger and the job queue

An event is marked processed only after its ledger write and job enqueues
have been persisted. A failure before that point surfaces to the caller so
the provider re-delivers the event.
"""
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.exceptions import VerificationError
from payment_events.core.job_payloads import (
    DowngradeAccount,
    JobType,
    PromotionPayload,
    UpgradeAccount,
)
from payment_events.core.jobs import JobQueue
from payment_events.core.ledger import PurchaseLedger
from payment_events.database.connection import insert_for
from payment_events.database.models import WebhookEventReceipt, utcnow
from payment_events.integrations.events import (
    CHARGE_REFUNDED,
    CHECKOUT_SESSION_COMPLETED,
    PAYMENT_INTENT_SUCCEEDED,
    ChargeObject,
    CheckoutSessionObject,
    PaymentIntentObject,
    WebhookEvent,
)
from payment_events.integrations.webhook_verifier import WebhookVerifier
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[WebhookEvent], Awaitable[Dict[str, Any]]]


def _dollars(amount: int) -> str:
    return f"${amount / 100:.2f}"


class WebhookHandler:
    """
    Handles provider webhook deliveries.

    Features:
    - Signature and replay-window verification
    - Event deduplication by provider event id
    - Event type routing to ledger writes and jobs
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: PurchaseLedger,
        jobs: JobQueue,
    ):
        """
        Initialize webhook handler.

        Args:
            verifier: Verifier bound to the endpoint secret
            session_factory: Factory for database sessions
            ledger: Purchase ledger
            jobs: Job queue for follow-up work
        """
        self.verifier = verifier
        self.session_factory = session_factory
        self.ledger = ledger
        self.jobs = jobs
        self.event_handlers: Dict[str, EventHandler] = {
            CHECKOUT_SESSION_COMPLETED: self.handle_checkout_completed,
            PAYMENT_INTENT_SUCCEEDED: self.handle_payment_intent_succeeded,
            CHARGE_REFUNDED: self.handle_charge_refunded,
        }

        logger.info("webhook_handler_initialized", event_types=sorted(self.event_handlers))

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and process one delivery.

        Args:
            raw_body: Request body exactly as received
            signature: Signature header value

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            VerificationError: If the delivery is not authentic or is stale
        """
        try:
            event = self.verifier.verify(raw_body, signature or "")
        except VerificationError as e:
            logger.warning("webhook_rejected", error_code=e.error_code, reason=e.message)
            metrics.record_webhook_rejected(e.error_code)
            raise

        return await self.process_event(event)

    async def is_event_processed(self, event_id: str) -> bool:
        """Whether an event has already been fully processed."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEventReceipt.processed_at).where(
                    WebhookEventReceipt.event_id == event_id
                )
            )
            processed_at = result.scalar_one_or_none()
        return processed_at is not None

    async def _record_receipt(self, event: WebhookEvent) -> None:
        async with self.session_factory() as db:
            stmt = insert_for(db, WebhookEventReceipt).values(
                event_id=event.id,
                event_type=event.type,
                received_at=utcnow(),
            )
            await db.execute(stmt.on_conflict_do_nothing(index_elements=[WebhookEventReceipt.event_id]))
            await db.commit()

    async def mark_event_processed(self, event_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookEventReceipt)
                .where(WebhookEventReceipt.event_id == event_id)
                .values(processed_at=utcnow())
            )
            await db.commit()
        logger.info("webhook_marked_processed", event_id=event_id)

    async def process_event(self, event: WebhookEvent) -> Dict[str, Any]:
        """
        Process a verified event.

        Returns:
            Dict[str, Any]: ``status`` is processed, duplicate or ignored

        Raises:
            Exception: Any ledger or queue failure, after logging
        """
        start_time = time.monotonic()
        log = logger.bind(event_id=event.id, event_type=event.type)
        log.info("processing_webhook_event")

        if await self.is_event_processed(event.id):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(event.type, "duplicate", time.monotonic() - start_time)
            return {"status": "duplicate", "event_id": event.id}

        await self._record_receipt(event)

        handler = self.event_handlers.get(event.type)
        if handler is None:
            log.info("webhook_unhandled_event")
            await self.mark_event_processed(event.id)
            metrics.record_webhook_event(event.type, "ignored", time.monotonic() - start_time)
            return {"status": "ignored", "event_id": event.id, "event_type": event.type}

        try:
            result = await handler(event)
        except Exception as e:
            log.error("webhook_event_processing_failed", error=str(e), error_type=type(e).__name__)
            metrics.record_webhook_event(event.type, "failed", time.monotonic() - start_time)
            raise

        await self.mark_event_processed(event.id)
        metrics.record_webhook_event(event.type, "processed", time.monotonic() - start_time)
        log.info("webhook_event_processed_successfully")
        return {"status": "processed", "event_id": event.id, "event_type": event.type, **result}

    async def handle_checkout_completed(self, event: WebhookEvent) -> Dict[str, Any]:
        """Record the purchase, then schedule promotion, upgrade and notification."""
        session = CheckoutSessionObject.model_validate(event.subject)
        if session.mode == "setup":
            logger.info("checkout_setup_session_ignored", session_id=session.id)
            return {"jobs": []}

        purchase = await self.ledger.record_completed_checkout(event)
        user_id = purchase.user_id
        job_ids: List[str] = []

        job = await self.jobs.enqueue(
            JobType.PROMOTION,
            PromotionPayload(
                event="purchase",
                user_id=user_id,
                amount=purchase.amount_total,
                reference_id=session.id,
            ),
        )
        job_ids.append(str(job.id))

        if user_id:
            job = await self.jobs.enqueue(
                JobType.DB_UPDATE,
                UpgradeAccount(
                    user_id=user_id,
                    payment_id=session.payment_intent or session.id,
                    amount=purchase.amount_total,
                    notify=True,
                ),
            )
            job_ids.append(str(job.id))
        else:
            logger.info("checkout_without_user", session_id=session.id)

        message = (
            f"Purchase completed for user {user_id or 'unknown'}: "
            f"{_dollars(purchase.amount_total)}"
        )
        if not purchase.integrity_valid:
            message += " (integrity check failed, flagged for review)"
        job = await self.jobs.notify(
            "purchase",
            message=message,
            user_id=user_id,
            email=session.customer_email,
            amount=purchase.amount_total,
            reference_id=session.id,
        )
        job_ids.append(str(job.id))

        return {"session_id": session.id, "integrity_valid": purchase.integrity_valid, "jobs": job_ids}

    async def handle_payment_intent_succeeded(self, event: WebhookEvent) -> Dict[str, Any]:
        """Schedule promotion, upgrade and notification for a successful payment."""
        intent = PaymentIntentObject.model_validate(event.subject)
        user_id = intent.user_id
        logger.info("handling_payment_intent_succeeded", payment_intent_id=intent.id, amount=intent.amount)
        job_ids: List[str] = []

        if intent.from_checkout:
            # checkout.session.completed already scheduled this purchase's effects
            logger.info("payment_intent_covered_by_checkout", payment_intent_id=intent.id)
            return {"payment_intent_id": intent.id, "jobs": job_ids, "covered_by_checkout": True}

        job = await self.jobs.enqueue(
            JobType.PROMOTION,
            PromotionPayload(event="payment", user_id=user_id, amount=intent.amount, reference_id=intent.id),
        )
        job_ids.append(str(job.id))

        if user_id:
            job = await self.jobs.enqueue(
                JobType.DB_UPDATE,
                UpgradeAccount(user_id=user_id, payment_id=intent.id, amount=intent.amount, notify=True),
            )
            job_ids.append(str(job.id))

        job = await self.jobs.notify(
            "payment_success",
            message=f"Payment succeeded for user {user_id or 'unknown'}: {_dollars(intent.amount)}",
            user_id=user_id,
            email=intent.receipt_email,
            amount=intent.amount,
            reference_id=intent.id,
        )
        job_ids.append(str(job.id))
        return {"payment_intent_id": intent.id, "jobs": job_ids}

    async def handle_charge_refunded(self, event: WebhookEvent) -> Dict[str, Any]:
        """Schedule refund promotion, downgrade and notification."""
        charge = ChargeObject.model_validate(event.subject)
        user_id = charge.user_id
        logger.info("handling_charge_refunded", charge_id=charge.id, amount_refunded=charge.amount_refunded)
        job_ids: List[str] = []

        job = await self.jobs.enqueue(
            JobType.PROMOTION,
            PromotionPayload(
                event="refund",
                user_id=user_id,
                amount=charge.amount_refunded,
                reference_id=charge.id,
            ),
        )
        job_ids.append(str(job.id))

        if user_id:
            job = await self.jobs.enqueue(
                JobType.DB_UPDATE,
                DowngradeAccount(
                    user_id=user_id,
                    charge_id=charge.id,
                    amount=charge.amount_refunded,
                    notify=True,
                ),
            )
            job_ids.append(str(job.id))

        job = await self.jobs.notify(
            "refund",
            message=f"Refund processed for user {user_id or 'unknown'}: {_dollars(charge.amount_refunded)}",
            user_id=user_id,
            email=charge.receipt_email,
            amount=charge.amount_refunded,
            reference_id=charge.id,
        )
        job_ids.append(str(job.id))
        return {"charge_id": charge.id, "jobs": job_ids}
