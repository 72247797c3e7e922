"""
Subscription Lifecycle Handler.

Decides whether a subscription still grants credit access, forfeits
balances when a subscription ends, and owns every write to the profile's
subscription fields.
"""

import time
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.config import settings
from credit_ledger.db.models import Profile, utc_now
from credit_ledger.db.repository import LedgerRepository, UnitOfWork
from credit_ledger.exceptions import InvalidPlanError, ProfileNotFoundError
from credit_ledger.models.api import (
    BillingPeriod,
    ForfeitReason,
    SubscriptionStatus,
    TransactionType,
)
from credit_ledger.models.domain import (
    CancellationResult,
    CreditAccessCheck,
    ExpiringSubscription,
    ForfeitResult,
    PaymentFailureResult,
    SubscriptionActivation,
)
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.catalog import get_plan_duration, is_paid_plan
from credit_ledger.services.transactions import TransactionLedger

logger = get_logger(__name__)

FORFEIT_DESCRIPTIONS: dict[ForfeitReason, str] = {
    ForfeitReason.SUBSCRIPTION_ENDED: "Credits forfeited - subscription ended",
    ForfeitReason.PAYMENT_FAILED: "Credits forfeited - payment failed after grace period",
    ForfeitReason.MANUAL_ADJUSTMENT: "Credits forfeited - manual adjustment",
}


def evaluate_credit_access(
    status: str | None, expires_at: datetime | None, now: datetime | None = None
) -> CreditAccessCheck:
    """
    Credit access rule shared by consumption and the lifecycle query.

    Active and trialing always pass. Cancelled passes until expiry.
    Past due passes until expiry plus the grace period.
    """
    now = now or utc_now()

    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
        return CreditAccessCheck(can_use=True, reason="Subscription is active")

    if status == SubscriptionStatus.CANCELLED.value and expires_at is not None:
        if expires_at > now:
            return CreditAccessCheck(
                can_use=True,
                reason="Credits available until end of billing period",
                expires_at=expires_at,
            )
        return CreditAccessCheck(
            can_use=False, reason="Subscription period has expired", expires_at=expires_at
        )

    if status == SubscriptionStatus.PAST_DUE.value and expires_at is not None:
        grace_period_end = expires_at + timedelta(days=settings.grace_period_days)
        if now <= grace_period_end:
            return CreditAccessCheck(
                can_use=True,
                reason=f"Payment past due - grace period until {grace_period_end.date().isoformat()}",
                expires_at=grace_period_end,
            )
        return CreditAccessCheck(
            can_use=False, reason="Grace period has expired", expires_at=grace_period_end
        )

    return CreditAccessCheck(can_use=False, reason="No active subscription")


class SubscriptionLifecycleHandler:
    """
    Reacts to subscription state changes.

    Forfeiture zeroes every live source in one bulk update and logs a
    single expiration entry; it is a no-op once the balance is zero.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize handler with a session factory."""
        self.session_factory = session_factory
        self.transactions = TransactionLedger(session_factory)

    # ========================================================================
    # Queries
    # ========================================================================

    async def can_use_credits_after_cancellation(self, profile_id: str) -> CreditAccessCheck:
        async with self.session_factory() as session:
            profile = await LedgerRepository(session).get_profile(profile_id)

        if profile is None:
            return CreditAccessCheck(can_use=False, reason="Profile not found")
        return evaluate_credit_access(profile.subscription_status, profile.subscription_expires_at)

    async def handle_payment_failure(self, profile_id: str) -> PaymentFailureResult:
        """Grace window and current balance; enforcement is left to the consumption gate."""
        now = utc_now()
        async with self.session_factory() as session:
            available = await LedgerRepository(session).sum_active_balance(profile_id, now=now)

        return PaymentFailureResult(
            grace_period_ends=now + timedelta(days=settings.grace_period_days),
            credits_available=available,
        )

    async def get_expiring_subscriptions(self, days_before_expiry: int) -> list[ExpiringSubscription]:
        """Active subscriptions ending within the next `days_before_expiry` days."""
        now = utc_now()
        async with self.session_factory() as session:
            profiles = await LedgerRepository(session).list_profiles_expiring_between(
                now, now + timedelta(days=days_before_expiry)
            )

        return [
            ExpiringSubscription(
                profile_id=p.id,
                email=p.email,
                plan=p.plan or settings.default_plan_id,
                expires_at=p.subscription_expires_at,
            )
            for p in profiles
            if p.subscription_expires_at is not None
        ]

    async def list_forfeitable_profiles(self, now: datetime | None = None) -> list[str]:
        """Cancelled or past-due profiles whose access cutoff has passed."""
        now = now or utc_now()
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            cancelled = await repo.list_profiles_expired_before(now, [SubscriptionStatus.CANCELLED])
            past_due = await repo.list_profiles_expired_before(
                now - timedelta(days=settings.grace_period_days), [SubscriptionStatus.PAST_DUE]
            )
        return [p.id for p in [*cancelled, *past_due]]

    # ========================================================================
    # Forfeiture
    # ========================================================================

    async def forfeit_all_credits(self, profile_id: str, reason: ForfeitReason) -> ForfeitResult:
        async with UnitOfWork(self.session_factory, profile_id) as uow:
            return await self.forfeit_in(uow, reason)

    async def forfeit_in(
        self, uow: UnitOfWork, reason: ForfeitReason, now: datetime | None = None
    ) -> ForfeitResult:
        """Forfeit inside an already-open unit of work."""
        now = now or utc_now()
        repo = uow.ledger
        sources = await repo.list_active_sources(uow.profile_id, now=now, for_update=True)
        if not sources:
            return ForfeitResult(success=True, credits_forfeited=0)

        total = sum(s.amount for s in sources)
        source_ids = [s.id for s in sources]
        await repo.zero_sources(uow.profile_id, source_ids)

        transaction = await self.transactions.create_transaction(
            uow,
            TransactionType.EXPIRATION,
            -total,
            0,
            description=FORFEIT_DESCRIPTIONS[reason],
            metadata={
                "reason": reason.value,
                "affected_sources": [str(s) for s in source_ids],
                "forfeited_at": now.isoformat(),
            },
        )

        metrics.record_expiration(reason.value, total)
        logger.info(
            "credits_forfeited",
            profile_id=uow.profile_id,
            credits_forfeited=total,
            sources=len(source_ids),
            reason=reason.value,
        )
        return ForfeitResult(success=True, credits_forfeited=total, transaction_id=transaction.id)

    async def handle_subscription_cancellation(self, profile_id: str) -> CancellationResult:
        """
        Forfeit immediately when the paid period is already over.

        Otherwise credits stay usable until expiry and nothing changes.
        """
        async with UnitOfWork(self.session_factory, profile_id) as uow:
            now = utc_now()
            expires_at = uow.profile.subscription_expires_at
            if expires_at is not None and expires_at <= now:
                forfeited = await self.forfeit_in(uow, ForfeitReason.SUBSCRIPTION_ENDED, now)
                return CancellationResult(
                    can_use_until=None,
                    credits_forfeited=forfeited.credits_forfeited,
                    transaction_id=forfeited.transaction_id,
                )

        logger.info("cancellation_deferred", profile_id=profile_id, can_use_until=expires_at)
        return CancellationResult(can_use_until=expires_at, credits_forfeited=0)

    async def handle_subscription_ended(self, profile_id: str) -> ForfeitResult:
        return await self.forfeit_all_credits(profile_id, ForfeitReason.SUBSCRIPTION_ENDED)

    # ========================================================================
    # Subscription Fields
    # ========================================================================

    async def activate_subscription(
        self,
        profile_id: str,
        plan_id: str,
        billing_period: BillingPeriod,
        is_renewal: bool = False,
    ) -> SubscriptionActivation:
        """
        Mark the subscription active and set its new expiry.

        A renewal extends from the later of the current expiry and now;
        a new subscription starts now.

        Raises:
            InvalidPlanError: If the plan is unknown or free
        """
        if not is_paid_plan(plan_id):
            raise InvalidPlanError(plan_id)

        async with UnitOfWork(self.session_factory, profile_id) as uow:
            return await self.activate_in(uow, plan_id, billing_period, is_renewal)

    async def activate_in(
        self,
        uow: UnitOfWork,
        plan_id: str,
        billing_period: BillingPeriod,
        is_renewal: bool = False,
        now: datetime | None = None,
    ) -> SubscriptionActivation:
        """Activate inside an already-open unit of work."""
        if not is_paid_plan(plan_id):
            raise InvalidPlanError(plan_id)
        duration_days = get_plan_duration(plan_id, billing_period)

        start = time.perf_counter()
        now = now or utc_now()
        current = uow.profile.subscription_expires_at
        base = max(current, now) if is_renewal and current is not None else now
        expires_at = base + timedelta(days=duration_days)

        await uow.ledger.update_subscription(
            uow.profile,
            status=SubscriptionStatus.ACTIVE,
            plan=plan_id,
            expires_at=expires_at,
            billing_period=billing_period.value,
        )

        logger.info(
            "subscription_activated",
            profile_id=uow.profile_id,
            plan_id=plan_id,
            billing_period=billing_period.value,
            is_renewal=is_renewal,
            expires_at=expires_at.isoformat(),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return SubscriptionActivation(
            expires_at=expires_at,
            plan_id=plan_id,
            billing_period=billing_period,
            is_renewal=is_renewal,
        )

    async def cancel_subscription(self, profile_id: str) -> Profile:
        """Mark cancelled; expiry is kept so access runs to period end."""
        async with UnitOfWork(self.session_factory, profile_id) as uow:
            profile = await uow.ledger.update_subscription(
                uow.profile, status=SubscriptionStatus.CANCELLED
            )
        logger.info("subscription_cancelled", profile_id=profile_id)
        return profile

    async def end_subscription(self, profile_id: str, reason: ForfeitReason) -> ForfeitResult:
        """Expire the subscription and forfeit the balance atomically."""
        async with UnitOfWork(self.session_factory, profile_id) as uow:
            now = utc_now()
            await uow.ledger.update_subscription(
                uow.profile, status=SubscriptionStatus.EXPIRED, expires_at=now
            )
            result = await self.forfeit_in(uow, reason, now)
        logger.info("subscription_ended", profile_id=profile_id, reason=reason.value)
        return result

    async def require_profile(self, profile_id: str) -> Profile:
        """
        Raises:
            ProfileNotFoundError: If the profile does not exist
        """
        async with self.session_factory() as session:
            profile = await LedgerRepository(session).get_profile(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        return profile
