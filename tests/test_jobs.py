"""
Tests for the durable job queue.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.bootstrap import PaymentCore, build_channels
from payment_events.config import Settings
from payment_events.core.exceptions import JobNotFound, JobNotReplayable
from payment_events.core.job_payloads import (
    DowngradeAccount,
    JobType,
    PromotionPayload,
    UpgradeAccount,
)
from payment_events.core.jobs import JobQueue
from payment_events.database.models import Job, utcnow
from payment_events.integrations.notifiers import PromotionClient


async def _all_jobs(session_factory: async_sessionmaker[AsyncSession]) -> List[Job]:
    async with session_factory() as db:
        result = await db.execute(select(Job).order_by(Job.created_at))
        return list(result.scalars().all())


async def _insert_job(
    session_factory: async_sessionmaker[AsyncSession], job_type: str, payload: Dict[str, Any]
) -> Job:
    """Write a row directly, bypassing enqueue validation."""
    job = Job(
        id=uuid.uuid4(),
        job_type=job_type,
        payload=payload,
        status="pending",
        created_at=utcnow(),
    )
    async with session_factory() as db:
        db.add(job)
        await db.commit()
    return job


@pytest_asyncio.fixture
async def held(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> Any:
    """A queue whose dispatcher only records jobs, leaving them pending."""
    dispatched: List[Job] = []

    async def hold(job: Job) -> None:
        dispatched.append(job)

    queue = JobQueue(
        session_factory,
        channels=build_channels(test_settings, http_client),
        promotion=PromotionClient(test_settings.promotion_api_url, http_client),
        dispatcher=hold,
    )
    return queue, dispatched


class TestNotifyJobs:
    """Test suite for notification fan-out."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delivered_to_every_channel(
        self, core: PaymentCore, outbound: Any
    ) -> None:
        """Test a notification with a recipient reaches chat and email."""
        job = await core.jobs.notify("payment", message="Paid", email="buyer@example.com")

        assert job.status == "done"
        assert job.outcome["status"] == "ok"
        assert job.outcome["delivered"] == ["discord", "email"]
        assert outbound.bodies("discord.test") == [{"content": "Paid"}]
        email = outbound.bodies("sendgrid.test")[0]
        assert email["personalizations"] == [{"to": [{"email": "buyer@example.com"}]}]
        assert outbound.to_host("sendgrid.test")[0].headers["Authorization"] == "Bearer SG.test"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_email_skipped_without_recipient(
        self, core: PaymentCore, outbound: Any
    ) -> None:
        """Test the email channel is skipped when no address is known."""
        job = await core.jobs.notify("refund", user_id="u1")

        assert job.outcome["delivered"] == ["discord"]
        assert job.outcome["skipped"] == ["email"]
        assert outbound.to_host("sendgrid.test") == []
        assert outbound.bodies("discord.test") == [{"content": "User u1 event: refund"}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_channel_failure_isolated(
        self, core: PaymentCore, outbound: Any
    ) -> None:
        """Test a failing chat webhook neither fails the job nor blocks email."""
        outbound.failing_hosts.add("discord.test")

        job = await core.jobs.notify("payment", message="Paid", email="buyer@example.com")

        assert job.status == "done"
        assert job.outcome["status"] == "partial_failure"
        assert job.outcome["delivered"] == ["email"]
        assert [f["channel"] for f in job.outcome["failures"]] == ["discord"]
        assert len(outbound.to_host("sendgrid.test")) == 1


class TestPromotionJobs:
    """Test suite for promotion forwarding."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_promotion_forwarded(self, core: PaymentCore, outbound: Any) -> None:
        """Test the payload is posted and the response kept on the job."""
        job = await core.jobs.enqueue(
            JobType.PROMOTION,
            PromotionPayload(event="payment", user_id="u1", amount=999, reference_id="pi_1"),
        )

        assert job.status == "done"
        assert job.outcome == {"status": "ok", "response": {"ok": True}}
        assert outbound.bodies("promo.test") == [
            {"event": "payment", "user_id": "u1", "amount": 999, "reference_id": "pi_1"}
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_promotion_failure_is_non_critical(
        self, core: PaymentCore, outbound: Any
    ) -> None:
        """Test an unavailable promotion service still completes the job."""
        outbound.failing_hosts.add("promo.test")

        job = await core.jobs.enqueue(
            JobType.PROMOTION, PromotionPayload(event="refund", reference_id="ch_1")
        )

        assert job.status == "done"
        assert job.outcome["status"] == "failed"
        assert job.outcome["cause"]


class TestAccountUpdateJobs:
    """Test suite for db_update jobs."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upgrade_creates_premium_account(
        self, core: PaymentCore, outbound: Any
    ) -> None:
        """Test an upgrade raises the tier and sends a follow-up notification."""
        job = await core.jobs.enqueue(
            JobType.DB_UPDATE,
            UpgradeAccount(user_id="u1", payment_id="pi_1", amount=999, notify=True),
        )

        assert job.status == "done"
        assert job.outcome == {"status": "ok", "action": "upgrade", "tier": "premium"}

        account = await core.quota.get_account("u1")
        assert account.tier == "premium"
        assert account.last_payment == "pi_1"
        assert account.last_payment_amount == 999

        jobs = await _all_jobs(core.session_factory)
        assert [j.job_type for j in jobs] == ["db_update", "notify"]
        assert jobs[1].payload["kind"] == "upgrade"
        assert outbound.bodies("discord.test") == [{"content": "User u1 upgraded to premium."}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upgrade_keeps_counters(self, core: PaymentCore) -> None:
        """Test upgrading an existing account leaves its usage counters alone."""
        await core.quota.check_and_increment("u1", "lore_drop")

        await core.jobs.enqueue(JobType.DB_UPDATE, UpgradeAccount(user_id="u1", payment_id="pi_1"))

        account = await core.quota.get_account("u1")
        assert account.tier == "premium"
        assert account.lore_drop_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_downgrade_returns_account_to_free(self, core: PaymentCore) -> None:
        """Test a downgrade records the refund and resets the tier."""
        await core.jobs.enqueue(JobType.DB_UPDATE, UpgradeAccount(user_id="u1", payment_id="pi_1"))

        job = await core.jobs.enqueue(
            JobType.DB_UPDATE, DowngradeAccount(user_id="u1", charge_id="ch_1", amount=999)
        )

        assert job.outcome == {"status": "ok", "action": "downgrade", "tier": "free"}
        account = await core.quota.get_account("u1")
        assert account.tier == "free"
        assert account.last_refund == "ch_1"
        assert account.last_refund_amount == 999

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_downgrade_unknown_account(self, core: PaymentCore) -> None:
        """Test a downgrade for an unknown user completes without creating a row."""
        job = await core.jobs.enqueue(
            JobType.DB_UPDATE, DowngradeAccount(user_id="ghost", charge_id="ch_1")
        )

        assert job.status == "done"
        assert job.outcome["account_found"] is False
        assert await core.quota.get_account("ghost") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_action_fails_without_mutation(self, core: PaymentCore) -> None:
        """Test a stored row with an unknown action ends in error and touches nothing."""
        job = await _insert_job(
            core.session_factory, "db_update", {"action": "delete_account", "user_id": "u1"}
        )

        await core.jobs.process(job)

        stored = await core.jobs.get(job.id)
        assert stored.status == "error"
        assert stored.error_message == "Unknown account action: 'delete_account'"
        assert await core.quota.get_account("u1") is None


class TestJobLifecycle:
    """Test suite for validation, status transitions and replay."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_payload_rejected_before_persisting(self, core: PaymentCore) -> None:
        """Test enqueue refuses payloads that do not fit the job type."""
        with pytest.raises(ValueError):
            await core.jobs.enqueue(JobType.DB_UPDATE, {"action": "upgrade"})
        with pytest.raises(ValueError):
            await core.jobs.enqueue("teleport", {})

        assert await _all_jobs(core.session_factory) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_job_type_row_ends_in_error(self, core: PaymentCore) -> None:
        """Test processing a stored row of an unknown type records an error."""
        job = await _insert_job(core.session_factory, "teleport", {})

        await core.jobs.process(job)

        stored = await core.jobs.get(job.id)
        assert stored.status == "error"
        assert stored.error_message == "Unknown job type: teleport"
        assert stored.completed_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_job_not_reprocessed(
        self, core: PaymentCore, outbound: Any
    ) -> None:
        """Test processing a finished job is a no-op."""
        job = await core.jobs.notify("payment", message="once")

        await core.jobs.process(job)

        assert len(outbound.to_host("discord.test")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatcher_leaves_job_pending(self, held: Any, outbound: Any) -> None:
        """Test the job is committed pending before the dispatcher runs."""
        queue, dispatched = held

        job = await queue.notify("payment", message="later")

        assert dispatched == [job]
        assert (await queue.get(job.id)).status == "pending"
        assert await queue.pending_count() == 1
        assert outbound.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatcher_failure_keeps_job(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Test a failing dispatcher does not lose the persisted job."""

        async def broken(job: Job) -> None:
            raise RuntimeError("scheduler down")

        queue = JobQueue(session_factory, dispatcher=broken)

        job = await queue.notify("payment", message="later")

        assert (await queue.get(job.id)).status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_pending_job(self, held: Any, outbound: Any) -> None:
        """Test an operator replay completes a job left pending."""
        queue, _ = held
        job = await queue.notify("payment", message="recovered")

        replayed = await queue.replay(str(job.id))

        assert replayed.status == "done"
        assert (await queue.get(job.id)).status == "done"
        assert outbound.bodies("discord.test") == [{"content": "recovered"}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_refuses_terminal_job(self, core: PaymentCore) -> None:
        """Test done and error jobs cannot be replayed."""
        job = await core.jobs.notify("payment", message="done already")

        with pytest.raises(JobNotReplayable) as exc_info:
            await core.jobs.replay(job.id)

        assert exc_info.value.http_status == 409

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_job(self, core: PaymentCore) -> None:
        """Test unknown and malformed ids raise JobNotFound."""
        with pytest.raises(JobNotFound):
            await core.jobs.get(uuid.uuid4())
        with pytest.raises(JobNotFound):
            await core.jobs.replay("not-a-uuid")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_stale_pending(self, held: Any) -> None:
        """Test only pending jobs older than the cutoff are listed."""
        queue, _ = held
        first = await queue.notify("payment", message="a")
        second = await queue.notify("payment", message="b")
        await queue.replay(second.id)

        stale = await queue.list_stale_pending(older_than=timedelta(0))
        recent = await queue.list_stale_pending(older_than=timedelta(hours=1))

        assert [j.id for j in stale] == [first.id]
        assert recent == []
