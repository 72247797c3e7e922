"""
Allocation Engine - recurring credit grants.

Monthly grants are truncated so the balance never exceeds the plan's
rollover cap. Yearly grants are paid upfront and uncapped.
"""

import math
import time
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.models import utc_now
from credit_ledger.db.repository import UnitOfWork
from credit_ledger.exceptions import InvalidSubscriptionPeriodError
from credit_ledger.models.api import BillingPeriod, CreditSourceType, TransactionType
from credit_ledger.models.domain import AllocationResult
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.catalog import get_plan, get_plan_duration
from credit_ledger.services.expiration import (
    RolloverEnforcer,
    calculate_monthly_expiration_date,
)
from credit_ledger.services.transactions import TransactionLedger

logger = get_logger(__name__)


def calculate_capped_allocation(existing_balance: int, grant: int, cap: int) -> int:
    """Full grant while it fits under the cap, otherwise whatever room is left."""
    if existing_balance + grant <= cap:
        return grant
    return max(0, cap - existing_balance)


def calculate_activation_duration_days(subscription_expires_at: datetime, now: datetime) -> int:
    """
    Whole days left in the paid period, rounded up.

    Raises:
        InvalidSubscriptionPeriodError: If the period has already ended
    """
    if subscription_expires_at <= now:
        raise InvalidSubscriptionPeriodError(subscription_expires_at)
    return math.ceil((subscription_expires_at - now) / timedelta(days=1))


class AllocationEngine:
    """Creates monthly and yearly credit sources with their ledger entries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize engine with a session factory."""
        self.session_factory = session_factory
        self.transactions = TransactionLedger(session_factory)
        self.enforcer = RolloverEnforcer(session_factory)

    async def allocate_monthly_credits(
        self,
        profile_id: str,
        plan_id: str,
        billing_cycle_start: datetime | None = None,
        duration_days: int | None = None,
    ) -> AllocationResult:
        """
        Grant a plan's monthly credits, respecting the rollover cap.

        Existing balance counts every live source, packs included. When
        carried-over monthly credits alone exceed the cap, the excess is
        expired first in the same unit of work.

        Raises:
            InvalidPlanError: If the plan is unknown
            ValueError: If duration_days is not positive
        """
        plan = get_plan(plan_id)
        if duration_days is None:
            duration_days = get_plan_duration(plan.id, BillingPeriod.MONTHLY)
        if duration_days <= 0:
            raise ValueError(f"Allocation duration must be positive: {duration_days}")

        with trace_operation("allocate_monthly_credits", profile_id=profile_id, plan_id=plan.id):
            async with UnitOfWork(self.session_factory, profile_id) as uow:
                return await self.allocate_monthly_in(
                    uow, plan.id, billing_cycle_start or utc_now(), duration_days
                )

    async def allocate_monthly_in(
        self,
        uow: UnitOfWork,
        plan_id: str,
        billing_cycle_start: datetime,
        duration_days: int,
        now: datetime | None = None,
    ) -> AllocationResult:
        """Monthly grant inside an already-open unit of work."""
        plan = get_plan(plan_id)
        expires_at = calculate_monthly_expiration_date(billing_cycle_start, duration_days)
        cap = plan.rollover_cap
        grant = plan.monthly_credits

        start = time.perf_counter()
        now = now or utc_now()
        repo = uow.ledger

        carried_monthly = await repo.sum_active_balance(
            uow.profile_id, source_type=CreditSourceType.MONTHLY, now=now
        )
        if carried_monthly > cap:
            await self.enforcer.expire_excess_in(uow, carried_monthly - cap, now)

        existing = await repo.sum_active_balance(uow.profile_id, now=now)
        allocated = calculate_capped_allocation(existing, grant, cap)
        total = existing + allocated

        source = await repo.add_source(
            uow.profile_id,
            source_type=CreditSourceType.MONTHLY,
            amount=allocated,
            initial_amount=grant,
            expires_at=expires_at,
            billing_cycle_start=billing_cycle_start,
        )

        description = f"Monthly credit allocation for {plan.name} plan"
        if allocated == 0:
            description += " (at rollover cap)"
        elif allocated < grant:
            description += " (rollover cap applied)"

        transaction = await self.transactions.create_transaction(
            uow,
            TransactionType.ALLOCATION,
            allocated,
            total,
            source_id=source.id,
            description=description,
            metadata={
                "plan_id": plan.id,
                "original_amount": grant,
                "rollover_cap_applied": allocated < grant,
            },
        )

        metrics.record_allocation(BillingPeriod.MONTHLY.value, allocated, time.perf_counter() - start)
        logger.info(
            "credits_allocated",
            profile_id=uow.profile_id,
            plan_id=plan.id,
            billing_period=BillingPeriod.MONTHLY.value,
            credits_allocated=allocated,
            grant=grant,
            existing_balance=existing,
            total_balance=total,
            expires_at=expires_at.isoformat(),
        )
        return AllocationResult(
            credits_allocated=allocated,
            total_balance=total,
            source_id=source.id,
            transaction_id=transaction.id,
        )

    async def allocate_yearly_credits(
        self,
        profile_id: str,
        plan_id: str,
        billing_cycle_start: datetime | None = None,
    ) -> AllocationResult:
        """
        Grant twelve months of credits upfront with a yearly expiry.

        No rollover cap applies.

        Raises:
            InvalidPlanError: If the plan is unknown
        """
        plan = get_plan(plan_id)
        with trace_operation("allocate_yearly_credits", profile_id=profile_id, plan_id=plan.id):
            async with UnitOfWork(self.session_factory, profile_id) as uow:
                return await self.allocate_yearly_in(uow, plan.id, billing_cycle_start or utc_now())

    async def allocate_yearly_in(
        self, uow: UnitOfWork, plan_id: str, billing_cycle_start: datetime
    ) -> AllocationResult:
        """Yearly grant inside an already-open unit of work."""
        plan = get_plan(plan_id)
        expires_at = calculate_monthly_expiration_date(
            billing_cycle_start, get_plan_duration(plan.id, BillingPeriod.YEARLY)
        )
        yearly_credits = plan.yearly_credits_upfront

        start = time.perf_counter()
        repo = uow.ledger
        existing = await repo.sum_active_balance(uow.profile_id)
        total = existing + yearly_credits

        source = await repo.add_source(
            uow.profile_id,
            source_type=CreditSourceType.MONTHLY,
            amount=yearly_credits,
            initial_amount=yearly_credits,
            expires_at=expires_at,
            billing_cycle_start=billing_cycle_start,
        )
        transaction = await self.transactions.create_transaction(
            uow,
            TransactionType.ALLOCATION,
            yearly_credits,
            total,
            source_id=source.id,
            description=(
                f"Yearly credit allocation for {plan.name} plan "
                f"({yearly_credits:,} credits)"
            ),
            metadata={
                "plan_id": plan.id,
                "billing_period": BillingPeriod.YEARLY.value,
                "original_amount": yearly_credits,
            },
        )

        metrics.record_allocation(BillingPeriod.YEARLY.value, yearly_credits, time.perf_counter() - start)
        logger.info(
            "credits_allocated",
            profile_id=uow.profile_id,
            plan_id=plan.id,
            billing_period=BillingPeriod.YEARLY.value,
            credits_allocated=yearly_credits,
            existing_balance=existing,
            total_balance=total,
            expires_at=expires_at.isoformat(),
        )
        return AllocationResult(
            credits_allocated=yearly_credits,
            total_balance=total,
            source_id=source.id,
            transaction_id=transaction.id,
        )

    async def allocate_credits_on_subscription_activation(
        self,
        profile_id: str,
        plan_id: str,
        subscription_expires_at: datetime,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> AllocationResult:
        """
        Allocate for a freshly activated or renewed subscription.

        Monthly grants expire with the subscription period, rounded up to
        whole days from now.

        Raises:
            InvalidPlanError: If the plan is unknown
            InvalidSubscriptionPeriodError: If subscription_expires_at is not in the future
        """
        get_plan(plan_id)
        now = utc_now()
        calculate_activation_duration_days(subscription_expires_at, now)

        with trace_operation(
            "allocate_credits_on_subscription_activation", profile_id=profile_id, plan_id=plan_id
        ):
            async with UnitOfWork(self.session_factory, profile_id) as uow:
                return await self.allocate_on_activation_in(
                    uow, plan_id, subscription_expires_at, billing_period, now
                )

    async def allocate_on_activation_in(
        self,
        uow: UnitOfWork,
        plan_id: str,
        subscription_expires_at: datetime,
        billing_period: BillingPeriod,
        now: datetime | None = None,
    ) -> AllocationResult:
        """Activation grant inside an already-open unit of work."""
        now = now or utc_now()
        duration_days = calculate_activation_duration_days(subscription_expires_at, now)

        if billing_period == BillingPeriod.YEARLY:
            return await self.allocate_yearly_in(uow, plan_id, now)
        return await self.allocate_monthly_in(uow, plan_id, now, duration_days, now)
