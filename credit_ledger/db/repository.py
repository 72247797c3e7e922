"""
Ledger Repository - explicit storage interface with a unit-of-work boundary.

Reads take a plain session. Every mutating method needs an active
UnitOfWork, which serialises all work on one profile:

    async with UnitOfWork(session_factory, profile_id) as uow:
        sources = await uow.ledger.list_active_sources(profile_id)
        await uow.ledger.deduct_from_source(sources[0], 10)
"""

import asyncio
import weakref
from datetime import datetime
from types import TracebackType
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.models import (
    CreditSource,
    CreditTransaction,
    PaymentRecord,
    Profile,
    utc_now,
)
from credit_ledger.exceptions import (
    DataIntegrityError,
    ProfileNotFoundError,
    UnitOfWorkError,
)
from credit_ledger.models.api import CreditSourceType, SubscriptionStatus, TransactionType
from credit_ledger.models.domain import TransactionIntent

logger = get_logger(__name__)

# Per-profile locks. Entries disappear once no unit of work holds them.
_profile_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _get_profile_lock(profile_id: str) -> asyncio.Lock:
    lock = _profile_locks.get(profile_id)
    if lock is None:
        lock = asyncio.Lock()
        _profile_locks[profile_id] = lock
    return lock


class UnitOfWork:
    """
    Atomic boundary for one profile's read-modify-write.

    begin() takes the in-process profile lock, opens a session and locks
    the profile row with SELECT ... FOR UPDATE. Everything done through
    `ledger` is committed or rolled back together.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], profile_id: str) -> None:
        """Initialize unit of work for a single profile."""
        self.session_factory = session_factory
        self.profile_id = profile_id
        self._lock = _get_profile_lock(profile_id)
        self._session: AsyncSession | None = None
        self._profile: Profile | None = None

    @property
    def active(self) -> bool:
        """True between begin() and commit()/rollback()."""
        return self._session is not None

    @property
    def session(self) -> AsyncSession:
        """Session bound to this unit of work."""
        if self._session is None:
            raise UnitOfWorkError("Unit of work has not begun")
        return self._session

    @property
    def profile(self) -> Profile:
        """Locked profile row."""
        if self._profile is None:
            raise UnitOfWorkError("Unit of work has not begun")
        return self._profile

    @property
    def ledger(self) -> "LedgerRepository":
        """Repository whose mutations are bound to this unit of work."""
        return LedgerRepository(self.session, uow=self)

    async def begin(self) -> Profile:
        """
        Start the unit of work and lock the profile.

        Raises:
            UnitOfWorkError: If already begun
            ProfileNotFoundError: If the profile does not exist
        """
        if self._session is not None:
            raise UnitOfWorkError("Unit of work already begun")

        await self._lock.acquire()
        try:
            self._session = self.session_factory()
            stmt = select(Profile).where(Profile.id == self.profile_id).with_for_update()
            result = await self._session.execute(stmt)
            profile = result.scalar_one_or_none()
            if profile is None:
                raise ProfileNotFoundError(self.profile_id)
            self._profile = profile
            return profile
        except BaseException:
            await self._release()
            raise

    async def commit(self) -> None:
        """Commit all changes and release the profile."""
        session = self.session
        try:
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await self._release()

    async def rollback(self) -> None:
        """Discard all changes and release the profile."""
        session = self.session
        try:
            await session.rollback()
        finally:
            await self._release()

    async def _release(self) -> None:
        session, self._session, self._profile = self._session, None, None
        try:
            if session is not None:
                await session.close()
        finally:
            self._lock.release()

    async def __aenter__(self) -> "UnitOfWork":
        await self.begin()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self.active:
            return
        if exc_type is None:
            await self.commit()
        else:
            logger.debug("unit_of_work_rollback", profile_id=self.profile_id, error=repr(exc))
            await self.rollback()


def _consumption_order() -> tuple[Any, ...]:
    """Pack sources first, then soonest expiry first."""
    pack_first = case((CreditSource.source_type == CreditSourceType.PACK.value, 0), else_=1)
    return (pack_first, CreditSource.expires_at.asc(), CreditSource.created_at.asc())


class LedgerRepository:
    """
    Storage access for credit sources, transactions and profiles.

    Constructed with a bare session the repository is read-only; mutating
    methods raise UnitOfWorkError unless it was obtained from an active
    UnitOfWork (`uow.ledger`).
    """

    def __init__(self, session: AsyncSession, uow: UnitOfWork | None = None) -> None:
        """Initialize repository with database session."""
        self.session = session
        self.uow = uow

    def _require_uow(self, profile_id: str) -> None:
        if self.uow is None or not self.uow.active:
            raise UnitOfWorkError("Ledger mutations require an active unit of work")
        if self.uow.profile_id != profile_id:
            raise UnitOfWorkError(
                f"Unit of work is bound to {self.uow.profile_id}, not {profile_id}"
            )

    # ========================================================================
    # Profiles
    # ========================================================================

    async def get_profile(self, profile_id: str) -> Profile | None:
        """Get a profile by id."""
        return await self.session.get(Profile, profile_id)

    async def list_profiles_expiring_between(
        self, start: datetime, end: datetime
    ) -> list[Profile]:
        """Active subscriptions whose expiry falls in [start, end]."""
        stmt = (
            select(Profile)
            .where(
                Profile.subscription_status == SubscriptionStatus.ACTIVE.value,
                Profile.subscription_expires_at.is_not(None),
                Profile.subscription_expires_at >= start,
                Profile.subscription_expires_at <= end,
            )
            .order_by(Profile.subscription_expires_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_profiles_expired_before(
        self, cutoff: datetime, statuses: list[SubscriptionStatus]
    ) -> list[Profile]:
        """Profiles in one of `statuses` whose subscription expired before `cutoff`."""
        stmt = (
            select(Profile)
            .where(
                Profile.subscription_status.in_([s.value for s in statuses]),
                Profile.subscription_expires_at.is_not(None),
                Profile.subscription_expires_at < cutoff,
            )
            .order_by(Profile.subscription_expires_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_subscription(
        self,
        profile: Profile,
        *,
        status: SubscriptionStatus,
        plan: str | None = None,
        expires_at: datetime | None = None,
        billing_period: str | None = None,
    ) -> Profile:
        """Write subscription fields on a locked profile."""
        self._require_uow(profile.id)

        profile.subscription_status = status.value
        if plan is not None:
            profile.plan = plan
        if expires_at is not None:
            profile.subscription_expires_at = expires_at
        if billing_period is not None:
            profile.billing_period = billing_period
        await self.session.flush()
        return profile

    # ========================================================================
    # Credit Sources
    # ========================================================================

    async def list_active_sources(
        self,
        profile_id: str,
        *,
        source_type: CreditSourceType | None = None,
        expiring_before: datetime | None = None,
        now: datetime | None = None,
        for_update: bool = False,
    ) -> list[CreditSource]:
        """
        Non-expired, positive sources in consumption order.

        Order is pack before monthly, then ascending expires_at.
        """
        now = now or utc_now()
        stmt = select(CreditSource).where(
            CreditSource.profile_id == profile_id,
            CreditSource.amount > 0,
            CreditSource.expires_at > now,
        )
        if source_type is not None:
            stmt = stmt.where(CreditSource.source_type == source_type.value)
        if expiring_before is not None:
            stmt = stmt.where(CreditSource.expires_at <= expiring_before)
        stmt = stmt.order_by(*_consumption_order())
        if for_update:
            stmt = stmt.with_for_update()

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def sum_active_balance(
        self,
        profile_id: str,
        *,
        source_type: CreditSourceType | None = None,
        now: datetime | None = None,
    ) -> int:
        """Sum of remaining amounts over non-expired, positive sources."""
        now = now or utc_now()
        stmt = select(func.coalesce(func.sum(CreditSource.amount), 0)).where(
            CreditSource.profile_id == profile_id,
            CreditSource.amount > 0,
            CreditSource.expires_at > now,
        )
        if source_type is not None:
            stmt = stmt.where(CreditSource.source_type == source_type.value)

        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_source(self, source_id: UUID) -> CreditSource | None:
        """Get a credit source by id."""
        return await self.session.get(CreditSource, source_id)

    async def add_source(
        self,
        profile_id: str,
        *,
        source_type: CreditSourceType,
        amount: int,
        initial_amount: int,
        expires_at: datetime,
        pack_id: str | None = None,
        billing_cycle_start: datetime | None = None,
    ) -> CreditSource:
        """Insert a new credit source."""
        self._require_uow(profile_id)

        if amount < 0 or amount > initial_amount:
            raise DataIntegrityError(
                f"Source amount must be within [0, {initial_amount}], got {amount}"
            )

        source = CreditSource(
            profile_id=profile_id,
            source_type=source_type.value,
            amount=amount,
            initial_amount=initial_amount,
            expires_at=expires_at,
            pack_id=pack_id if source_type == CreditSourceType.PACK else None,
            billing_cycle_start=(
                billing_cycle_start if source_type == CreditSourceType.MONTHLY else None
            ),
        )
        self.session.add(source)
        await self.session.flush()
        return source

    async def deduct_from_source(self, source: CreditSource, amount: int) -> CreditSource:
        """Decrement a source's remaining amount."""
        self._require_uow(source.profile_id)

        if amount < 0:
            raise DataIntegrityError(f"Deduction cannot be negative: {amount}")
        if amount > source.amount:
            raise DataIntegrityError(
                f"Deduction {amount} exceeds remaining {source.amount} on source {source.id}"
            )

        source.amount -= amount
        await self.session.flush()
        return source

    async def zero_sources(self, profile_id: str, source_ids: list[UUID]) -> int:
        """Bulk-zero the given sources; returns the number of rows updated."""
        self._require_uow(profile_id)

        if not source_ids:
            return 0

        stmt = (
            update(CreditSource)
            .where(CreditSource.profile_id == profile_id, CreditSource.id.in_(source_ids))
            .values(amount=0, updated_at=utc_now())
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return int(result.rowcount or 0)

    # ========================================================================
    # Transactions
    # ========================================================================

    async def add_transaction(self, profile_id: str, intent: TransactionIntent) -> CreditTransaction:
        """Append a ledger entry."""
        self._require_uow(profile_id)

        transaction = CreditTransaction(
            profile_id=profile_id,
            transaction_type=intent.transaction_type.value,
            amount=intent.amount,
            balance_after=intent.balance_after,
            operation=intent.operation,
            source_id=intent.source_id,
            description=intent.description,
            transaction_metadata=dict(intent.metadata or {}),
        )
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def attach_payment_details(
        self, transaction: CreditTransaction, details: dict[str, Any]
    ) -> CreditTransaction:
        """
        Merge payment details into a transaction's metadata.

        The only update ever applied to a ledger entry; amount and
        balance_after are untouched.
        """
        self._require_uow(transaction.profile_id)

        transaction.transaction_metadata = {**transaction.transaction_metadata, **details}
        await self.session.flush()
        return transaction

    async def get_transaction(self, transaction_id: UUID) -> CreditTransaction | None:
        """Get a transaction by id."""
        return await self.session.get(CreditTransaction, transaction_id)

    async def list_transactions(
        self,
        profile_id: str,
        *,
        limit: int,
        offset: int,
        transaction_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        """Transactions newest first."""
        stmt = select(CreditTransaction).where(CreditTransaction.profile_id == profile_id)
        if transaction_type is not None:
            stmt = stmt.where(CreditTransaction.transaction_type == transaction_type.value)
        stmt = (
            stmt.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_transactions(
        self, profile_id: str, transaction_type: TransactionType | None = None
    ) -> int:
        """Count transactions for a profile."""
        stmt = select(func.count(CreditTransaction.id)).where(
            CreditTransaction.profile_id == profile_id
        )
        if transaction_type is not None:
            stmt = stmt.where(CreditTransaction.transaction_type == transaction_type.value)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class PaymentRecordStore:
    """
    Idempotency store keyed on (provider, provider_transaction_id).

    Each call runs in its own short session so a claim is visible to
    concurrent deliveries before any ledger work starts.
    """

    STATUS_PENDING = "pending"
    STATUS_COMPLETED = "completed"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize store with a session factory."""
        self.session_factory = session_factory

    async def claim(
        self,
        *,
        provider: str,
        provider_transaction_id: str,
        profile_id: str,
        payment_type: str,
        provider_order_id: str | None = None,
        plan: str | None = None,
        pack_id: str | None = None,
        amount_minor: int = 0,
        currency: str = "USD",
    ) -> bool:
        """
        Insert a pending record for the payment.

        Returns:
            True if this call owns the payment, False if it was already recorded
        """
        async with self.session_factory() as session:
            session.add(
                PaymentRecord(
                    profile_id=profile_id,
                    provider=provider,
                    provider_transaction_id=provider_transaction_id,
                    provider_order_id=provider_order_id,
                    payment_type=payment_type,
                    plan=plan,
                    pack_id=pack_id,
                    amount_minor=amount_minor,
                    currency=currency,
                    status=self.STATUS_PENDING,
                )
            )
            try:
                await session.commit()
                return True
            except IntegrityError as e:
                await session.rollback()
                conflict = e

            # Distinguish a duplicate from any other constraint failure
            existing = await self._get(session, provider, provider_transaction_id)
            if existing is None:
                raise conflict
            logger.info(
                "payment_already_recorded",
                provider=provider,
                provider_transaction_id=provider_transaction_id,
                status=existing.status,
            )
            return False

    async def release(self, provider: str, provider_transaction_id: str) -> None:
        """Drop a pending claim so a redelivery can retry."""
        async with self.session_factory() as session:
            await session.execute(
                delete(PaymentRecord).where(
                    PaymentRecord.provider == provider,
                    PaymentRecord.provider_transaction_id == provider_transaction_id,
                    PaymentRecord.status == self.STATUS_PENDING,
                )
            )
            await session.commit()

    async def complete(self, provider: str, provider_transaction_id: str) -> None:
        """Mark a claimed payment as applied to the ledger."""
        async with self.session_factory() as session:
            await session.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.provider == provider,
                    PaymentRecord.provider_transaction_id == provider_transaction_id,
                )
                .values(status=self.STATUS_COMPLETED, updated_at=utc_now())
            )
            await session.commit()

    async def get(self, provider: str, provider_transaction_id: str) -> PaymentRecord | None:
        """Look up a payment record by its idempotency key."""
        async with self.session_factory() as session:
            return await self._get(session, provider, provider_transaction_id)

    async def find_profile_for_subscription(self, provider: str, subscription_id: str) -> str | None:
        """Profile that paid for a provider subscription, from its earliest record."""
        async with self.session_factory() as session:
            stmt = (
                select(PaymentRecord.profile_id)
                .where(
                    PaymentRecord.provider == provider,
                    PaymentRecord.provider_order_id == subscription_id,
                    PaymentRecord.payment_type == "subscription",
                )
                .order_by(PaymentRecord.created_at.asc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    @staticmethod
    async def _get(
        session: AsyncSession, provider: str, provider_transaction_id: str
    ) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(
            PaymentRecord.provider == provider,
            PaymentRecord.provider_transaction_id == provider_transaction_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
