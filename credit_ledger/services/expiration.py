"""
Rollover & Expiration Enforcer.

Trims carried-over monthly balance down to the plan's rollover cap and
answers "what expires soon" queries. Pack sources are never trimmed.
"""

from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.models import utc_now
from credit_ledger.db.repository import LedgerRepository, UnitOfWork
from credit_ledger.models.api import CreditSourceType, TransactionType
from credit_ledger.models.domain import ExpirationResult, ExpiringCredits, RolloverSplit
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.transactions import TransactionLedger

logger = get_logger(__name__)

ROLLOVER_CAP_REASON = "rollover_cap"


def calculate_monthly_expiration_date(billing_cycle_start: datetime, duration_days: int) -> datetime:
    return billing_cycle_start + timedelta(days=duration_days)


def calculate_pack_expiration_date(purchase_date: datetime, validity_days: int) -> datetime:
    return purchase_date + timedelta(days=validity_days)


def calculate_rollover_credits(current_balance: int, new_allocation: int, cap: int) -> RolloverSplit:
    """
    Split the current balance into what rolls over and what expires.

    Nothing expires while current + new stays within the cap; otherwise the
    overflow expires, bounded by the current balance.
    """
    if current_balance < 0 or new_allocation < 0 or cap < 0:
        raise ValueError("Balances and cap cannot be negative")

    potential_total = current_balance + new_allocation
    if potential_total <= cap:
        return RolloverSplit(credits_to_rollover=current_balance, credits_to_expire=0)

    credits_to_expire = min(potential_total - cap, current_balance)
    return RolloverSplit(
        credits_to_rollover=current_balance - credits_to_expire,
        credits_to_expire=credits_to_expire,
    )


class RolloverEnforcer:
    """Expires excess monthly credits, oldest-expiring first."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize enforcer with a session factory."""
        self.session_factory = session_factory
        self.transactions = TransactionLedger(session_factory)

    async def expire_excess_credits(self, profile_id: str, excess_amount: int) -> ExpirationResult:
        """
        Expire up to `excess_amount` monthly credits in one unit of work.

        A zero excess is a no-op and writes nothing.
        """
        if excess_amount < 0:
            raise ValueError(f"Excess amount cannot be negative: {excess_amount}")
        if excess_amount == 0:
            return ExpirationResult(expired_credits=0)

        async with UnitOfWork(self.session_factory, profile_id) as uow:
            return await self.expire_excess_in(uow, excess_amount)

    async def expire_excess_in(
        self, uow: UnitOfWork, excess_amount: int, now: datetime | None = None
    ) -> ExpirationResult:
        """Expire excess monthly credits inside an already-open unit of work."""
        if excess_amount <= 0:
            return ExpirationResult(expired_credits=0)

        now = now or utc_now()
        repo = uow.ledger
        sources = await repo.list_active_sources(
            uow.profile_id, source_type=CreditSourceType.MONTHLY, now=now, for_update=True
        )

        remaining = excess_amount
        expired = 0
        affected = []
        for source in sources:
            if remaining <= 0:
                break
            take = min(source.amount, remaining)
            await repo.deduct_from_source(source, take)
            affected.append(source.id)
            expired += take
            remaining -= take

        if expired == 0:
            return ExpirationResult(expired_credits=0)

        balance_after = await repo.sum_active_balance(uow.profile_id, now=now)
        await self.transactions.create_transaction(
            uow,
            TransactionType.EXPIRATION,
            -expired,
            balance_after,
            description="Credits expired due to rollover cap",
            metadata={
                "affected_sources": [str(s) for s in affected],
                "reason": ROLLOVER_CAP_REASON,
            },
        )

        metrics.record_expiration(ROLLOVER_CAP_REASON, expired)
        logger.info(
            "credits_expired",
            profile_id=uow.profile_id,
            expired_credits=expired,
            requested=excess_amount,
            balance_after=balance_after,
            reason=ROLLOVER_CAP_REASON,
        )
        return ExpirationResult(expired_credits=expired, affected_sources=tuple(affected))

    async def get_expiring_credits(self, profile_id: str, within_days: int) -> ExpiringCredits:
        """Credits whose sources expire within the next `within_days` days."""
        now = utc_now()
        async with self.session_factory() as session:
            sources = await LedgerRepository(session).list_active_sources(
                profile_id, expiring_before=now + timedelta(days=within_days), now=now
            )

        if not sources:
            return ExpiringCredits(amount=0, expires_at=None)
        return ExpiringCredits(
            amount=sum(s.amount for s in sources),
            expires_at=min(s.expires_at for s in sources),
        )
