"""
Per-tier usage quotas.

Each check is one conditional ``UPDATE`` that increments the counter only
while it is below the tier's limit, so concurrent requests can never push a
counter past its limit. Accounts that do not exist yet are created on the
free tier first.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Union

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.job_payloads import Tier
from payment_events.core.jobs import JobQueue
from payment_events.database.connection import insert_for
from payment_events.database.models import Account, utcnow
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class Operation(str, Enum):
    """Metered operations."""

    API_CALL = "api_call"
    LORE_DROP = "lore_drop"


DEFAULT_LIMITS: Dict[Tier, Dict[Operation, int]] = {
    Tier.FREE: {Operation.API_CALL: 100, Operation.LORE_DROP: 10},
    Tier.PREMIUM: {Operation.API_CALL: 1000, Operation.LORE_DROP: 100},
    Tier.ENTERPRISE: {Operation.API_CALL: 100000, Operation.LORE_DROP: 10000},
}

_COUNTERS = {
    Operation.API_CALL: Account.api_call_count,
    Operation.LORE_DROP: Account.lore_drop_count,
}


@dataclass(frozen=True)
class Allow:
    """The operation was counted."""

    operation: str
    tier: str
    count: int
    limit: int

    allowed = True


@dataclass(frozen=True)
class Deny:
    """The counter is at its limit; nothing was incremented."""

    operation: str
    tier: str
    count: int
    limit: int

    allowed = False

    @property
    def reason(self) -> str:
        return f"{self.tier} tier {self.operation} limit of {self.limit} reached"


QuotaDecision = Union[Allow, Deny]


class QuotaEnforcer:
    """Checks and increments usage counters atomically."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: JobQueue,
        limits: Optional[Mapping[Union[Tier, str], Mapping[Union[Operation, str], int]]] = None,
    ):
        """
        Initialize quota enforcer.

        Args:
            session_factory: Factory for database sessions
            jobs: Queue used to send ``limit`` notifications on denial
            limits: Per-tier overrides of DEFAULT_LIMITS
        """
        self.session_factory = session_factory
        self.jobs = jobs
        self.limits: Dict[Tier, Dict[Operation, int]] = {
            tier: dict(ops) for tier, ops in DEFAULT_LIMITS.items()
        }
        for tier, ops in (limits or {}).items():
            for op, value in ops.items():
                self.limits[Tier(tier)][Operation(op)] = value

    def limit_for(self, tier: Union[Tier, str], operation: Union[Operation, str]) -> int:
        return self.limits[Tier(tier)][Operation(operation)]

    async def check_and_increment(
        self, user_id: str, operation: Union[Operation, str]
    ) -> QuotaDecision:
        """
        Count one operation for a user if the tier limit allows it.

        Args:
            user_id: Account to charge the operation to
            operation: ``api_call`` or ``lore_drop``

        Returns:
            Allow or Deny. A Deny also enqueues a ``limit`` notification.
        """
        op = Operation(operation)
        counter = _COUNTERS[op]
        limit_expr = case(
            {tier.value: ops[op] for tier, ops in self.limits.items()},
            value=Account.tier,
            else_=0,
        )

        async with self.session_factory() as db:
            now = utcnow()
            create = insert_for(db, Account).values(
                user_id=user_id,
                tier=Tier.FREE.value,
                api_call_count=0,
                lore_drop_count=0,
                updated_at=now,
            ).on_conflict_do_nothing(index_elements=[Account.user_id])
            await db.execute(create)

            result = await db.execute(
                update(Account)
                .where(Account.user_id == user_id, counter < limit_expr)
                .values({counter: counter + 1, Account.updated_at: now})
            )
            incremented = result.rowcount == 1

            row = (
                await db.execute(select(Account.tier, counter).where(Account.user_id == user_id))
            ).one()
            await db.commit()

        tier, count = row[0], row[1]
        limit = self.limit_for(tier, op)
        metrics.record_quota_decision(op.value, tier, "allow" if incremented else "deny")

        if incremented:
            logger.debug("quota_allowed", user_id=user_id, operation=op.value, count=count, limit=limit)
            return Allow(operation=op.value, tier=tier, count=count, limit=limit)

        decision = Deny(operation=op.value, tier=tier, count=count, limit=limit)
        logger.warning("quota_denied", user_id=user_id, operation=op.value, tier=tier, limit=limit)
        try:
            await self.jobs.notify(
                "limit",
                message=f"User {user_id} hit the {decision.reason}.",
                user_id=user_id,
            )
        except Exception as e:
            logger.error("quota_limit_notification_failed", user_id=user_id, error=str(e))
        return decision

    async def get_account(self, user_id: str) -> Optional[Account]:
        """Current account row, or None if the user has never been metered or upgraded."""
        async with self.session_factory() as db:
            return await db.get(Account, user_id)
