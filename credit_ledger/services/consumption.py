"""
Consumption Engine - atomic, pack-first FIFO credit spending.

Every consumption runs in one unit of work: the profile row is locked,
sources are read and deducted, and a single ledger entry is written.
Concurrent calls for the same profile never see the same snapshot.
"""

import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.config import settings
from credit_ledger.db.models import utc_now
from credit_ledger.db.repository import LedgerRepository, UnitOfWork
from credit_ledger.exceptions import (
    CreditOperationError,
    InsufficientCreditsError,
    NoActiveSubscriptionError,
)
from credit_ledger.models.api import TransactionType
from credit_ledger.models.domain import AffordabilityCheck, ConsumptionResult
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.catalog import get_credit_cost
from credit_ledger.services.subscription import evaluate_credit_access
from credit_ledger.services.transactions import TransactionLedger

logger = get_logger(__name__)


class ConsumptionEngine:
    """
    Deducts operation costs from a profile's credit sources.

    Order: pack sources before monthly, then soonest expiry first.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize engine with a session factory."""
        self.session_factory = session_factory
        self.transactions = TransactionLedger(session_factory)

    async def consume_credits(
        self,
        profile_id: str,
        operation: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConsumptionResult:
        """
        Spend the cost of `operation`.

        Raises:
            CreditOperationError: Unknown operation (checked first)
            NoActiveSubscriptionError: Subscription does not grant access
            InsufficientCreditsError: Balance below cost; nothing is deducted
            ProfileNotFoundError: Profile does not exist
        """
        try:
            cost = get_credit_cost(operation)
        except CreditOperationError:
            metrics.record_consumption_rejected("invalid_operation")
            logger.warning(
                "consumption_rejected",
                profile_id=profile_id,
                operation=operation,
                reason="invalid_operation",
            )
            raise

        start = time.perf_counter()
        with trace_operation("consume_credits", profile_id=profile_id, operation=operation) as span:
            try:
                result = await self._consume(profile_id, operation, cost, metadata or {})
            except NoActiveSubscriptionError as e:
                metrics.record_consumption_rejected("no_active_subscription")
                logger.warning(
                    "consumption_rejected",
                    profile_id=profile_id,
                    operation=operation,
                    reason="no_active_subscription",
                    detail=e.reason,
                )
                raise
            except InsufficientCreditsError as e:
                metrics.record_consumption_rejected("insufficient_credits")
                logger.warning(
                    "consumption_rejected",
                    profile_id=profile_id,
                    operation=operation,
                    reason="insufficient_credits",
                    required=e.required,
                    available=e.available,
                )
                raise
            span.set_attribute("remaining_balance", result.remaining_balance)

        metrics.record_consumption(operation, cost, time.perf_counter() - start)
        logger.info(
            "credits_consumed",
            profile_id=profile_id,
            operation=operation,
            credits_used=cost,
            remaining_balance=result.remaining_balance,
            transaction_id=str(result.transaction_id),
            is_low=result.is_low,
        )
        return result

    async def _consume(
        self, profile_id: str, operation: str, cost: int, metadata: dict[str, Any]
    ) -> ConsumptionResult:
        async with UnitOfWork(self.session_factory, profile_id) as uow:
            now = utc_now()
            profile = uow.profile
            access = evaluate_credit_access(
                profile.subscription_status, profile.subscription_expires_at, now
            )
            if not access.can_use:
                raise NoActiveSubscriptionError(access.reason)

            repo = uow.ledger
            sources = await repo.list_active_sources(profile_id, now=now, for_update=True)
            available = sum(s.amount for s in sources)
            if available < cost:
                raise InsufficientCreditsError(required=cost, available=available)

            remaining = cost
            affected = []
            for source in sources:
                if remaining <= 0:
                    break
                take = min(source.amount, remaining)
                await repo.deduct_from_source(source, take)
                affected.append(source.id)
                remaining -= take

            balance_after = available - cost
            transaction = await self.transactions.create_transaction(
                uow,
                TransactionType.CONSUMPTION,
                -cost,
                balance_after,
                operation=operation,
                source_id=affected[0] if affected else None,
                description=f"Credits consumed for {operation}",
                metadata={
                    **metadata,
                    "affected_sources": [str(s) for s in affected],
                    "credit_cost": cost,
                },
            )

        return ConsumptionResult(
            success=True,
            credits_used=cost,
            remaining_balance=balance_after,
            transaction_id=transaction.id,
            is_low=balance_after < settings.low_balance_threshold,
        )

    async def can_afford_operation(self, profile_id: str, operation: str) -> AffordabilityCheck:
        """
        Raises:
            CreditOperationError: If the operation is unknown
        """
        required = get_credit_cost(operation)
        async with self.session_factory() as session:
            available = await LedgerRepository(session).sum_active_balance(profile_id)
        return AffordabilityCheck(
            can_afford=available >= required, available=available, required=required
        )

    async def validate_credits_for_operation(self, profile_id: str, operation: str) -> None:
        """
        Raises:
            CreditOperationError: If the operation is unknown
            InsufficientCreditsError: If the balance cannot cover it
        """
        check = await self.can_afford_operation(profile_id, operation)
        if not check.can_afford:
            raise InsufficientCreditsError(required=check.required, available=check.available)
