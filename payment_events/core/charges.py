"""
Direct charges, refunds and metered lore drops.

Every operation is metered by the quota enforcer first. Provider calls go
through the retrying gateway with one idempotency key per operation, so a
retried attempt can never charge twice.
"""
import uuid
from typing import Dict, Optional

import structlog

from payment_events.core.exceptions import ProviderError, QuotaExceeded
from payment_events.core.gateway import RetryingGateway
from payment_events.core.job_payloads import Tier
from payment_events.core.jobs import JobQueue
from payment_events.core.quota import Allow, Operation, QuotaEnforcer
from payment_events.integrations.stripe_client import (
    PaymentProvider,
    ProviderCharge,
    ProviderRefund,
)

logger = structlog.get_logger(__name__)

DEFAULT_FREE_TIER_MAX_CHARGE = 100000
DEFAULT_COUPONS: Dict[str, int] = {"HALFOFF": 50}


class ChargeService:
    """Charges and refunds on behalf of an account."""

    def __init__(
        self,
        provider: PaymentProvider,
        gateway: RetryingGateway,
        quota: QuotaEnforcer,
        jobs: JobQueue,
        free_tier_max_charge: int = DEFAULT_FREE_TIER_MAX_CHARGE,
        coupons: Optional[Dict[str, int]] = None,
    ):
        """
        Initialize charge service.

        Args:
            provider: Payment provider
            gateway: Retry wrapper for provider calls
            quota: Usage metering
            jobs: Queue for payment/refund/error notifications
            free_tier_max_charge: Largest single charge a free account may make (minor units)
            coupons: Percent discounts by coupon code
        """
        self.provider = provider
        self.gateway = gateway
        self.quota = quota
        self.jobs = jobs
        self.free_tier_max_charge = free_tier_max_charge
        self.coupons = {
            code.upper(): percent
            for code, percent in (DEFAULT_COUPONS if coupons is None else coupons).items()
        }

    async def _require(self, user_id: str, operation: Operation) -> Allow:
        decision = await self.quota.check_and_increment(user_id, operation)
        if not decision.allowed:
            raise QuotaExceeded(decision.reason, user_id=user_id, tier=decision.tier)
        return decision

    def apply_coupon(self, amount: int, coupon: Optional[str]) -> int:
        """
        Discounted amount for a coupon code.

        Unknown codes leave the amount unchanged. Discounts round down to
        whole minor units.
        """
        if not coupon:
            return amount
        percent = self.coupons.get(coupon.strip().upper())
        if percent is None:
            logger.info("charge_coupon_unknown", coupon=coupon)
            return amount
        return amount * (100 - percent) // 100

    async def create_charge(
        self,
        user_id: str,
        amount: int,
        currency: str,
        source: str,
        description: Optional[str] = None,
        coupon: Optional[str] = None,
    ) -> ProviderCharge:
        """
        Charge a payment source.

        A coupon is applied before the free-tier ceiling is checked, so the
        ceiling limits what is actually charged.

        Args:
            user_id: Account making the charge
            amount: Amount in minor units, before any coupon
            currency: ISO currency code
            source: Provider payment source token
            description: Shown on the provider dashboard
            coupon: Optional discount code

        Returns:
            ProviderCharge: The created charge

        Raises:
            QuotaExceeded: If the account is out of API calls or over the free-tier ceiling
            ProviderError: If the provider call ultimately fails
        """
        requested = amount
        amount = self.apply_coupon(requested, coupon)
        log = logger.bind(user_id=user_id, amount=amount, currency=currency)
        if amount != requested:
            log = log.bind(requested_amount=requested, coupon=coupon)
        decision = await self._require(user_id, Operation.API_CALL)

        if decision.tier == Tier.FREE.value and amount > self.free_tier_max_charge:
            reason = f"Charge amount exceeds free tier limit of {self.free_tier_max_charge}"
            log.warning("charge_over_free_tier_limit", limit=self.free_tier_max_charge)
            await self.jobs.notify(
                "limit",
                message=f"User {user_id} attempted charge above free tier limit",
                user_id=user_id,
                amount=amount,
            )
            raise QuotaExceeded(reason, user_id=user_id, tier=decision.tier)

        metadata = {"user_id": user_id}
        if amount != requested:
            metadata["coupon"] = coupon.strip().upper()
        idempotency_key = str(uuid.uuid4())
        try:
            charge = await self.gateway.call(
                lambda: self.provider.create_charge(
                    amount=amount,
                    currency=currency,
                    source=source,
                    description=description,
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                ),
                operation="create_charge",
            )
        except ProviderError as e:
            log.error("charge_failed", error=e.message, error_code=e.error_code)
            await self.jobs.notify("error", message=f"Charge error: {e.message}", user_id=user_id)
            raise

        log.info("charge_processed", charge_id=charge.id, status=charge.status)
        await self.jobs.notify(
            "payment",
            message=f"Charge processed for user {user_id}, amount {amount}",
            user_id=user_id,
            amount=amount,
            reference_id=charge.id,
        )
        return charge

    async def refund_charge(self, charge_id: str, user_id: str) -> ProviderRefund:
        """
        Refund a charge in full.

        Tier changes from the refund arrive separately through the
        ``charge.refunded`` webhook.

        Raises:
            QuotaExceeded: If the account is out of API calls
            ProviderError: If the provider call ultimately fails
        """
        log = logger.bind(user_id=user_id, charge_id=charge_id)
        await self._require(user_id, Operation.API_CALL)

        idempotency_key = str(uuid.uuid4())
        try:
            refund = await self.gateway.call(
                lambda: self.provider.create_refund(
                    charge_id,
                    metadata={"user_id": user_id},
                    idempotency_key=idempotency_key,
                ),
                operation="create_refund",
            )
        except ProviderError as e:
            log.error("refund_failed", error=e.message, error_code=e.error_code)
            await self.jobs.notify("error", message=f"Refund error: {e.message}", user_id=user_id)
            raise

        log.info("refund_processed", refund_id=refund.id, status=refund.status)
        await self.jobs.notify(
            "refund",
            message=f"Refund processed for user {user_id}, charge {charge_id}",
            user_id=user_id,
            amount=refund.amount,
            reference_id=charge_id,
        )
        return refund

    async def record_lore_drop(self, user_id: str) -> Allow:
        """
        Meter one lore drop.

        Raises:
            QuotaExceeded: If the tier's lore drop allowance is used up
        """
        decision = await self._require(user_id, Operation.LORE_DROP)
        logger.info("lore_drop_recorded", user_id=user_id, count=decision.count, limit=decision.limit)
        return decision
