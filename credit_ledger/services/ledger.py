"""
Credits Ledger facade.

One object wiring the engines to a shared session factory. Expected
business failures come back as Err values instead of exceptions; storage
errors and programming errors still raise.
"""

import functools
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.db.models import utc_now
from credit_ledger.db.repository import UnitOfWork
from credit_ledger.models.api import BillingPeriod, ForfeitReason, TransactionType
from credit_ledger.models.domain import (
    AffordabilityCheck,
    AllocationResult,
    CancellationResult,
    ConsumptionResult,
    CreditBalance,
    ForfeitResult,
    PackPurchaseResult,
    PaidActivation,
    PaymentDetails,
    TransactionHistory,
    WithCreditsResult,
)
from credit_ledger.models.result import EXPECTED_ERRORS, Err, Ok, Outcome
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.allocation import AllocationEngine
from credit_ledger.services.balance import BalanceAggregator
from credit_ledger.services.consumption import ConsumptionEngine
from credit_ledger.services.expiration import RolloverEnforcer
from credit_ledger.services.packs import PackPurchaseHandler
from credit_ledger.services.subscription import SubscriptionLifecycleHandler
from credit_ledger.services.transactions import TransactionLedger

T = TypeVar("T")

ReservedCall = Callable[..., Awaitable[Outcome[WithCreditsResult[Any]]]]


async def _capture(call: Awaitable[T]) -> Outcome[T]:
    try:
        return Ok(await call)
    except EXPECTED_ERRORS as e:
        return Err(e)  # type: ignore[arg-type]


class CreditsLedger:
    """Entry point for callers above the ledger (API routes, webhooks, jobs)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Build every component over one session factory."""
        self.session_factory = session_factory
        self.balance = BalanceAggregator(session_factory)
        self.transactions = TransactionLedger(session_factory)
        self.allocation = AllocationEngine(session_factory)
        self.consumption = ConsumptionEngine(session_factory)
        self.expiration = RolloverEnforcer(session_factory)
        self.packs = PackPurchaseHandler(session_factory)
        self.subscriptions = SubscriptionLifecycleHandler(session_factory)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_credits_balance(self, profile_id: str) -> CreditBalance:
        return await self.balance.get_credits_balance(profile_id)

    async def get_total_balance(self, profile_id: str) -> int:
        return await self.balance.get_total_balance(profile_id)

    async def get_transaction_history(
        self,
        profile_id: str,
        limit: int = 20,
        offset: int = 0,
        transaction_type: TransactionType | None = None,
    ) -> TransactionHistory:
        return await self.transactions.get_transaction_history(
            profile_id, limit=limit, offset=offset, transaction_type=transaction_type
        )

    async def can_afford_operation(
        self, profile_id: str, operation: str
    ) -> Outcome[AffordabilityCheck]:
        return await _capture(self.consumption.can_afford_operation(profile_id, operation))

    # ========================================================================
    # Expected-failure operations
    # ========================================================================

    async def consume_credits(
        self, profile_id: str, operation: str, metadata: dict[str, Any] | None = None
    ) -> Outcome[ConsumptionResult]:
        return await _capture(self.consumption.consume_credits(profile_id, operation, metadata))

    async def purchase_credit_pack(self, profile_id: str, pack_id: str) -> Outcome[PackPurchaseResult]:
        return await _capture(self.packs.purchase_credit_pack(profile_id, pack_id))

    async def finalize_credit_pack_purchase(
        self, profile_id: str, pack_id: str, payment: PaymentDetails
    ) -> Outcome[PackPurchaseResult]:
        return await _capture(self.packs.finalize_credit_pack_purchase(profile_id, pack_id, payment))

    async def with_credits(
        self,
        profile_id: str,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        metadata: dict[str, Any] | None = None,
    ) -> Outcome[WithCreditsResult[T]]:
        """
        Pre-pay: consume first, then run `fn`.

        Credits stay spent if `fn` raises.
        """
        consumed = await self.consume_credits(profile_id, operation, metadata)
        if isinstance(consumed, Err):
            return consumed
        result = await fn()
        return Ok(WithCreditsResult(result=result, credits=consumed.value))

    async def with_credits_post_pay(
        self,
        profile_id: str,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        metadata: dict[str, Any] | None = None,
    ) -> Outcome[WithCreditsResult[T]]:
        """
        Post-pay: check affordability, run `fn`, then consume.

        Nothing is spent if `fn` raises. Consumption can still fail after
        `fn` succeeded when the balance changed in between.
        """
        try:
            await self.consumption.validate_credits_for_operation(profile_id, operation)
        except EXPECTED_ERRORS as e:
            return Err(e)  # type: ignore[arg-type]

        result = await fn()
        consumed = await self.consume_credits(profile_id, operation, metadata)
        if isinstance(consumed, Err):
            return consumed
        return Ok(WithCreditsResult(result=result, credits=consumed.value))

    async def reserve_credits(self, profile_id: str, operation: str) -> Outcome[ReservedCall]:
        """
        Check affordability now and return a callable that pays later.

        The callable takes `(fn, metadata=None)` and runs `with_credits`.
        Nothing is held in between, so the balance is checked again when
        it is called.
        """
        try:
            await self.consumption.validate_credits_for_operation(profile_id, operation)
        except EXPECTED_ERRORS as e:
            return Err(e)  # type: ignore[arg-type]
        return Ok(functools.partial(self.with_credits, profile_id, operation))

    # ========================================================================
    # Grants and lifecycle (invalid input raises)
    # ========================================================================

    async def allocate_monthly_credits(
        self,
        profile_id: str,
        plan_id: str,
        billing_cycle_start: datetime | None = None,
        duration_days: int | None = None,
    ) -> AllocationResult:
        return await self.allocation.allocate_monthly_credits(
            profile_id, plan_id, billing_cycle_start=billing_cycle_start, duration_days=duration_days
        )

    async def allocate_yearly_credits(
        self, profile_id: str, plan_id: str, billing_cycle_start: datetime | None = None
    ) -> AllocationResult:
        return await self.allocation.allocate_yearly_credits(
            profile_id, plan_id, billing_cycle_start=billing_cycle_start
        )

    async def allocate_credits_on_subscription_activation(
        self,
        profile_id: str,
        plan_id: str,
        subscription_expires_at: datetime,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> AllocationResult:
        return await self.allocation.allocate_credits_on_subscription_activation(
            profile_id, plan_id, subscription_expires_at, billing_period
        )

    async def activate_subscription_with_credits(
        self,
        profile_id: str,
        plan_id: str,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        is_renewal: bool = False,
    ) -> PaidActivation:
        """
        Activate or renew a paid subscription and grant its credits.

        Both writes share one unit of work: the new expiry and the
        allocation commit together or not at all.

        Raises:
            InvalidPlanError: If the plan is unknown or free
        """
        with trace_operation(
            "activate_subscription_with_credits", profile_id=profile_id, plan_id=plan_id
        ):
            async with UnitOfWork(self.session_factory, profile_id) as uow:
                now = utc_now()
                activation = await self.subscriptions.activate_in(
                    uow, plan_id, billing_period, is_renewal, now
                )
                allocation = await self.allocation.allocate_on_activation_in(
                    uow, plan_id, activation.expires_at, billing_period, now
                )
        return PaidActivation(activation=activation, allocation=allocation)

    async def forfeit_all_credits(self, profile_id: str, reason: ForfeitReason) -> ForfeitResult:
        return await self.subscriptions.forfeit_all_credits(profile_id, reason)

    async def handle_subscription_cancellation(self, profile_id: str) -> CancellationResult:
        return await self.subscriptions.handle_subscription_cancellation(profile_id)
