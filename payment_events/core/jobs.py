"""
Durable job queue for payment side effects.

Jobs are committed as ``pending`` before any work starts and committed again
with their terminal status afterwards, so a crash mid-processing leaves a
visible ``pending`` row for an operator to replay.

Status transitions are enforced in storage: the terminal update is
``UPDATE ... WHERE id = ? AND status = 'pending'``.

Processing is handed to a dispatcher. The default dispatcher runs the job
inline; a real scheduler can be injected later without touching callers.
"""
import time
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.exceptions import JobNotFound, JobNotReplayable, UnknownAction
from payment_events.core.job_payloads import (
    DowngradeAccount,
    JobPayload,
    JobStatus,
    JobType,
    NotifyPayload,
    PromotionPayload,
    Tier,
    UpgradeAccount,
    parse_payload,
)
from payment_events.database.connection import insert_for
from payment_events.database.models import Account, Job, utcnow
from payment_events.integrations.notifiers import (
    ChannelFailure,
    NotificationChannel,
    NotificationOutcome,
    PromotionClient,
)
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Dispatcher = Callable[[Job], Awaitable[None]]


class JobQueue:
    """
    Persists jobs and runs promotion, account-update and notification work.

    Processing failures are captured per job and recorded as status
    ``error``; they are never raised back into the code that enqueued.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channels: Sequence[NotificationChannel] = (),
        promotion: Optional[PromotionClient] = None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        """
        Initialize job queue.

        Args:
            session_factory: Factory for database sessions
            channels: Notification channels used by ``notify`` jobs
            promotion: Client for the ad/promotion service
            dispatcher: Called with each newly persisted job (defaults to inline processing)
        """
        self.session_factory = session_factory
        self.channels = list(channels)
        self.promotion = promotion
        self.dispatcher = dispatcher or self.process

        self._handlers: Dict[JobType, Callable[[Job, Any], Awaitable[None]]] = {
            JobType.PROMOTION: self._handle_promotion,
            JobType.DB_UPDATE: self._handle_db_update,
            JobType.NOTIFY: self._handle_notify,
        }

        logger.info(
            "job_queue_initialized",
            channels=[c.name for c in self.channels],
            promotion_enabled=bool(promotion and promotion.enabled),
        )

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Union[BaseModel, Mapping[str, Any]],
    ) -> Job:
        """
        Persist a pending job and hand it to the dispatcher.

        Args:
            job_type: Kind of job
            payload: Payload matching the job type

        Returns:
            Job: The job row (terminal when processed inline)

        Raises:
            ValueError: If the type is unknown or the payload does not fit it
        """
        job_type = JobType(job_type)
        parsed = parse_payload(job_type, payload)

        job = Job(
            id=uuid.uuid4(),
            job_type=job_type.value,
            payload=parsed.model_dump(mode="json"),
            status=JobStatus.PENDING.value,
            created_at=utcnow(),
        )
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()

        metrics.record_job_enqueued(job_type.value)
        logger.info("job_enqueued", job_id=str(job.id), job_type=job_type.value)

        try:
            await self.dispatcher(job)
        except Exception as e:
            # The job is persisted; a dispatcher failure leaves it pending for replay.
            logger.error(
                "job_dispatch_failed",
                job_id=str(job.id),
                job_type=job_type.value,
                error=str(e),
            )

        return job

    async def notify(
        self,
        kind: str,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        amount: Optional[int] = None,
        reference_id: Optional[str] = None,
    ) -> Job:
        """Shortcut for enqueuing a ``notify`` job."""
        return await self.enqueue(
            JobType.NOTIFY,
            NotifyPayload(
                kind=kind,
                message=message,
                user_id=user_id,
                email=email,
                amount=amount,
                reference_id=reference_id,
            ),
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, job: Job) -> None:
        """
        Run a pending job and record its terminal status.

        Never raises: every failure ends up in the job's status.
        """
        start_time = time.monotonic()
        log = logger.bind(job_id=str(job.id), job_type=job.job_type)

        if job.status != JobStatus.PENDING.value:
            log.warning("job_not_pending", status=job.status)
            return

        log.info("job_processing_started")

        try:
            job_type = JobType(job.job_type)
        except ValueError:
            log.error("job_unknown_type")
            await self._finish_safely(job, JobStatus.ERROR, error=f"Unknown job type: {job.job_type}")
            metrics.record_job_completed(job.job_type, job.status, time.monotonic() - start_time)
            return

        try:
            payload = parse_payload(job_type, job.payload)
        except ValidationError as e:
            error = self._payload_error(job_type, job.payload, e)
            log.error("job_invalid_payload", error=error)
            await self._finish_safely(job, JobStatus.ERROR, error=error)
            metrics.record_job_completed(job.job_type, job.status, time.monotonic() - start_time)
            return

        try:
            await self._handlers[job_type](job, payload)
        except Exception as e:
            log.error("job_processing_failed", error=str(e), error_type=type(e).__name__)
            await self._finish_safely(job, JobStatus.ERROR, error=str(e))

        metrics.record_job_completed(job.job_type, job.status, time.monotonic() - start_time)
        log.info("job_processing_completed", status=job.status)

    @staticmethod
    def _payload_error(job_type: JobType, raw: Any, error: ValidationError) -> str:
        if job_type is JobType.DB_UPDATE and isinstance(raw, Mapping):
            action = raw.get("action")
            if action not in ("upgrade", "downgrade"):
                return UnknownAction(action).message
        return f"Invalid {job_type.value} payload: {error}"

    async def _finish(
        self,
        db: AsyncSession,
        job: Job,
        status: JobStatus,
        outcome: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Move a job from pending to a terminal status inside ``db``'s transaction.

        Returns:
            bool: False if the row was no longer pending (already finished elsewhere)
        """
        completed_at = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job.id, Job.status == JobStatus.PENDING.value)
            .values(
                status=status.value,
                outcome=outcome,
                error_message=error,
                completed_at=completed_at,
            )
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            logger.warning("job_already_finished", job_id=str(job.id))
            return False

        job.status = status.value
        job.outcome = outcome
        job.error_message = error
        job.completed_at = completed_at
        return True

    async def _finish_standalone(
        self,
        job: Job,
        status: JobStatus,
        outcome: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            await self._finish(db, job, status, outcome=outcome, error=error)
            await db.commit()

    async def _finish_safely(
        self,
        job: Job,
        status: JobStatus,
        outcome: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            await self._finish_standalone(job, status, outcome=outcome, error=error)
        except Exception as e:
            # Row stays pending and is visible to the replay worker.
            logger.error("job_status_update_failed", job_id=str(job.id), error=str(e))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_promotion(self, job: Job, payload: PromotionPayload) -> None:
        """Promotion failures are non-critical: the job is done either way."""
        if self.promotion is None or not self.promotion.enabled:
            outcome: Dict[str, Any] = {"status": "skipped"}
        else:
            try:
                response = await self.promotion.promote(payload)
                outcome = {"status": "ok", "response": response}
                logger.info("promotion_sent", job_id=str(job.id), event=payload.event)
            except Exception as e:
                logger.error("promotion_failed", job_id=str(job.id), error=str(e))
                outcome = {"status": "failed", "cause": str(e)}

        await self._finish_standalone(job, JobStatus.DONE, outcome=outcome)

    async def _handle_db_update(
        self, job: Job, payload: Union[UpgradeAccount, DowngradeAccount]
    ) -> None:
        """Apply the account change and the job's terminal status atomically."""
        async with self.session_factory() as db:
            if isinstance(payload, UpgradeAccount):
                outcome = await self._upgrade(db, payload)
            else:
                outcome = await self._downgrade(db, payload)

            if not await self._finish(db, job, JobStatus.DONE, outcome=outcome):
                await db.rollback()
                return
            await db.commit()

        if payload.notify:
            await self._enqueue_follow_up(payload)

    async def _upgrade(self, db: AsyncSession, payload: UpgradeAccount) -> Dict[str, Any]:
        stmt = insert_for(db, Account).values(
            user_id=payload.user_id,
            tier=Tier.PREMIUM.value,
            api_call_count=0,
            lore_drop_count=0,
            last_payment=payload.payment_id,
            last_payment_amount=payload.amount,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Account.user_id],
            set_={
                "tier": Tier.PREMIUM.value,
                "last_payment": payload.payment_id,
                "last_payment_amount": payload.amount,
                "updated_at": utcnow(),
            },
        )
        await db.execute(stmt)
        logger.info("account_upgraded", user_id=payload.user_id, payment_id=payload.payment_id)
        return {"status": "ok", "action": "upgrade", "tier": Tier.PREMIUM.value}

    async def _downgrade(self, db: AsyncSession, payload: DowngradeAccount) -> Dict[str, Any]:
        stmt = (
            update(Account)
            .where(Account.user_id == payload.user_id)
            .values(
                tier=Tier.FREE.value,
                last_refund=payload.charge_id,
                last_refund_amount=payload.amount,
                updated_at=utcnow(),
            )
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            logger.warning("account_not_found_for_downgrade", user_id=payload.user_id)
            return {"status": "ok", "action": "downgrade", "account_found": False}
        logger.info("account_downgraded", user_id=payload.user_id, charge_id=payload.charge_id)
        return {"status": "ok", "action": "downgrade", "tier": Tier.FREE.value}

    async def _enqueue_follow_up(self, payload: Union[UpgradeAccount, DowngradeAccount]) -> None:
        if isinstance(payload, UpgradeAccount):
            await self.notify(
                "upgrade",
                message=f"User {payload.user_id} upgraded to premium.",
                user_id=payload.user_id,
                amount=payload.amount,
                reference_id=payload.payment_id,
            )
        else:
            await self.notify(
                "downgrade",
                message=f"User {payload.user_id} downgraded to free.",
                user_id=payload.user_id,
                amount=payload.amount,
                reference_id=payload.charge_id,
            )

    async def _handle_notify(self, job: Job, payload: NotifyPayload) -> None:
        """Fan out to every channel; one channel failing never stops the others."""
        outcome = NotificationOutcome()
        for channel in self.channels:
            if not channel.accepts(payload):
                outcome.skipped.append(channel.name)
                continue
            try:
                await channel.send(payload)
                outcome.delivered.append(channel.name)
            except Exception as e:
                logger.error(
                    "notification_channel_failed",
                    job_id=str(job.id),
                    channel=channel.name,
                    error=str(e),
                )
                metrics.record_channel_failure(channel.name)
                outcome.failures.append(ChannelFailure(channel=channel.name, cause=str(e)))

        logger.info(
            "notification_fanned_out",
            job_id=str(job.id),
            kind=payload.kind,
            delivered=outcome.delivered,
            failed=[f.channel for f in outcome.failures],
        )
        await self._finish_standalone(job, JobStatus.DONE, outcome=outcome.to_dict())

    # ------------------------------------------------------------------
    # Operator access
    # ------------------------------------------------------------------

    async def get(self, job_id: Union[uuid.UUID, str]) -> Job:
        """
        Load a job by id.

        Raises:
            JobNotFound: If no such job exists
        """
        try:
            key = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
        except ValueError:
            raise JobNotFound(job_id)

        async with self.session_factory() as db:
            job = await db.get(Job, key)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_stale_pending(
        self, older_than: timedelta = timedelta(minutes=5), limit: int = 100
    ) -> List[Job]:
        """Pending jobs created before ``now - older_than``, oldest first."""
        cutoff = utcnow() - older_than
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.PENDING.value, Job.created_at <= cutoff)
            .order_by(Job.created_at)
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def pending_count(self) -> int:
        """Number of jobs still pending."""
        stmt = select(func.count()).select_from(Job).where(Job.status == JobStatus.PENDING.value)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return int(result.scalar_one())

    async def replay(self, job_id: Union[uuid.UUID, str]) -> Job:
        """
        Re-run a job left pending (e.g. after a crash mid-processing).

        Raises:
            JobNotFound: If no such job exists
            JobNotReplayable: If the job already reached a terminal status
        """
        job = await self.get(job_id)
        if job.status != JobStatus.PENDING.value:
            raise JobNotReplayable(job.id, job.status)

        logger.info("job_replay_requested", job_id=str(job.id), job_type=job.job_type)
        await self.process(job)
        return job
