"""
Balance Aggregator - read-only view over a profile's credit sources.

Safe to call concurrently; nothing here mutates state.
"""

from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.config import settings
from credit_ledger.db.models import CreditSource, utc_now
from credit_ledger.db.repository import LedgerRepository
from credit_ledger.models.api import CreditSourceType
from credit_ledger.models.domain import (
    BalanceBreakdown,
    BreakdownEntry,
    CreditBalance,
    ExpiringCredits,
)
from credit_ledger.services.catalog import PLANS


def _breakdown_entry(sources: list[CreditSource]) -> BreakdownEntry | None:
    if not sources:
        return None
    return BreakdownEntry(
        amount=sum(s.amount for s in sources),
        expires_at=min(s.expires_at for s in sources),
    )


def is_low_for_plan(total: int, plan_id: str | None) -> bool:
    """True when total is under the low-balance share of the plan's monthly credits."""
    plan = PLANS.get(plan_id or settings.default_plan_id) or PLANS[settings.default_plan_id]
    return total < settings.low_balance_ratio * plan.monthly_credits


class BalanceAggregator:
    """Computes total balance and its breakdown from non-expired sources."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize aggregator with a session factory."""
        self.session_factory = session_factory

    async def get_total_balance(self, profile_id: str) -> int:
        """Sum of remaining amounts over non-expired, positive sources."""
        async with self.session_factory() as session:
            return await LedgerRepository(session).sum_active_balance(profile_id)

    async def has_sufficient_credits(self, profile_id: str, required: int) -> bool:
        return await self.get_total_balance(profile_id) >= required

    async def get_credits_balance(self, profile_id: str) -> CreditBalance:
        """
        Balance with per-type breakdown and low/expiring signals.

        Each breakdown entry shows the earliest expiry within its type.
        Expiring credits cover sources ending within the configured window
        and are omitted when there are none.
        """
        now = utc_now()
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            sources = await repo.list_active_sources(profile_id, now=now)
            profile = await repo.get_profile(profile_id)

        monthly = [s for s in sources if s.source_type == CreditSourceType.MONTHLY.value]
        packs = [s for s in sources if s.source_type == CreditSourceType.PACK.value]
        total = sum(s.amount for s in sources)

        cutoff = now + timedelta(days=settings.expiring_soon_days)
        expiring = [s for s in sources if s.expires_at <= cutoff]
        expiring_credits = None
        if expiring:
            expiring_credits = ExpiringCredits(
                amount=sum(s.amount for s in expiring),
                expires_at=min(s.expires_at for s in expiring),
            )

        return CreditBalance(
            total=total,
            breakdown=BalanceBreakdown(
                monthly=_breakdown_entry(monthly),
                pack=_breakdown_entry(packs),
            ),
            is_low=is_low_for_plan(total, profile.plan if profile else None),
            expiring_credits=expiring_credits,
        )
