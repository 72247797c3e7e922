"""
Tests for the unit of work, ledger repository and payment record store.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.db.repository import LedgerRepository, PaymentRecordStore, UnitOfWork
from credit_ledger.exceptions import DataIntegrityError, ProfileNotFoundError, UnitOfWorkError
from credit_ledger.models.api import CreditSourceType, TransactionType
from credit_ledger.models.domain import TransactionIntent


class TestUnitOfWork:
    """Tests for the per-profile atomic boundary."""

    async def test_missing_profile_raises_and_releases(self, session_factory):
        uow = UnitOfWork(session_factory, "ghost")
        with pytest.raises(ProfileNotFoundError):
            await uow.begin()
        assert uow.active is False

        # Lock was released: a second attempt fails the same way instead of hanging
        with pytest.raises(ProfileNotFoundError):
            await asyncio.wait_for(UnitOfWork(session_factory, "ghost").begin(), timeout=2)

    async def test_begin_twice_raises(self, session_factory, make_profile):
        await make_profile()
        uow = UnitOfWork(session_factory, "prof-1")
        await uow.begin()
        try:
            with pytest.raises(UnitOfWorkError, match="already begun"):
                await uow.begin()
        finally:
            await uow.rollback()

    async def test_session_before_begin_raises(self, session_factory):
        with pytest.raises(UnitOfWorkError):
            UnitOfWork(session_factory, "prof-1").session

    async def test_commit_persists(self, session_factory, make_profile):
        await make_profile()
        async with UnitOfWork(session_factory, "prof-1") as uow:
            await uow.ledger.add_source(
                "prof-1",
                source_type=CreditSourceType.MONTHLY,
                amount=100,
                initial_amount=100,
                expires_at=datetime.now(UTC) + timedelta(days=30),
            )

        async with session_factory() as session:
            assert await LedgerRepository(session).sum_active_balance("prof-1") == 100

    async def test_exception_rolls_back_everything(self, session_factory, make_profile):
        """A failure after the source insert leaves neither source nor transaction."""
        await make_profile()
        with pytest.raises(RuntimeError):
            async with UnitOfWork(session_factory, "prof-1") as uow:
                source = await uow.ledger.add_source(
                    "prof-1",
                    source_type=CreditSourceType.MONTHLY,
                    amount=100,
                    initial_amount=100,
                    expires_at=datetime.now(UTC) + timedelta(days=30),
                )
                await uow.ledger.add_transaction(
                    "prof-1",
                    TransactionIntent(
                        TransactionType.ALLOCATION, amount=100, balance_after=100, source_id=source.id
                    ),
                )
                raise RuntimeError("storage failed")

        async with session_factory() as session:
            repo = LedgerRepository(session)
            assert await repo.sum_active_balance("prof-1") == 0
            assert await repo.count_transactions("prof-1") == 0

    async def test_same_profile_units_are_serialised(self, session_factory, make_profile):
        await make_profile()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with UnitOfWork(session_factory, "prof-1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.05)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    async def test_different_profiles_run_in_parallel(self, session_factory, make_profile):
        await make_profile("prof-1")
        await make_profile("prof-2")
        inside = 0
        overlap = False

        async def worker(profile_id: str) -> None:
            nonlocal inside, overlap
            async with UnitOfWork(session_factory, profile_id):
                inside += 1
                await asyncio.sleep(0.05)
                overlap = overlap or inside == 2
                inside -= 1

        await asyncio.gather(worker("prof-1"), worker("prof-2"))
        assert overlap is True


class TestLedgerRepositoryGuards:
    """Mutations need an active unit of work bound to the same profile."""

    async def test_bare_session_cannot_mutate(self, session_factory, make_profile):
        await make_profile()
        async with session_factory() as session:
            repo = LedgerRepository(session)
            with pytest.raises(UnitOfWorkError, match="active unit of work"):
                await repo.add_source(
                    "prof-1",
                    source_type=CreditSourceType.PACK,
                    amount=10,
                    initial_amount=10,
                    expires_at=datetime.now(UTC) + timedelta(days=1),
                )

    async def test_uow_bound_to_other_profile_cannot_mutate(self, session_factory, make_profile):
        await make_profile("prof-1")
        await make_profile("prof-2")
        async with UnitOfWork(session_factory, "prof-1") as uow:
            with pytest.raises(UnitOfWorkError, match="bound to prof-1"):
                await uow.ledger.add_transaction(
                    "prof-2",
                    TransactionIntent(TransactionType.ALLOCATION, amount=1, balance_after=1),
                )

    async def test_overdraw_rejected(self, session_factory, make_profile, make_source):
        await make_profile()
        source = await make_source(amount=10)
        async with UnitOfWork(session_factory, "prof-1") as uow:
            fresh = await uow.ledger.get_source(source.id)
            with pytest.raises(DataIntegrityError):
                await uow.ledger.deduct_from_source(fresh, 11)

    async def test_amount_above_initial_rejected(self, session_factory, make_profile):
        await make_profile()
        async with UnitOfWork(session_factory, "prof-1") as uow:
            with pytest.raises(DataIntegrityError):
                await uow.ledger.add_source(
                    "prof-1",
                    source_type=CreditSourceType.MONTHLY,
                    amount=20,
                    initial_amount=10,
                    expires_at=datetime.now(UTC) + timedelta(days=1),
                )


class TestActiveSources:
    """Tests for source filtering and consumption order."""

    async def test_expired_and_empty_sources_excluded(
        self, session_factory, make_profile, make_source
    ):
        await make_profile()
        await make_source(amount=100)
        await make_source(amount=50, expires_in=timedelta(days=-1))
        await make_source(amount=0, initial_amount=40)

        async with session_factory() as session:
            repo = LedgerRepository(session)
            sources = await repo.list_active_sources("prof-1")
            assert [s.amount for s in sources] == [100]
            assert await repo.sum_active_balance("prof-1") == 100

    async def test_pack_first_then_soonest_expiry(self, session_factory, make_profile, make_source):
        await make_profile()
        late_monthly = await make_source(amount=10, expires_in=timedelta(days=25))
        early_monthly = await make_source(amount=10, expires_in=timedelta(days=5))
        late_pack = await make_source(
            amount=10, source_type=CreditSourceType.PACK, expires_in=timedelta(days=80), pack_id="small"
        )
        early_pack = await make_source(
            amount=10, source_type=CreditSourceType.PACK, expires_in=timedelta(days=60), pack_id="small"
        )

        async with session_factory() as session:
            sources = await LedgerRepository(session).list_active_sources("prof-1")

        assert [s.id for s in sources] == [early_pack.id, late_pack.id, early_monthly.id, late_monthly.id]

    async def test_sum_by_type(self, session_factory, make_profile, make_source):
        await make_profile()
        await make_source(amount=70)
        await make_source(amount=30, source_type=CreditSourceType.PACK, pack_id="small")

        async with session_factory() as session:
            repo = LedgerRepository(session)
            assert await repo.sum_active_balance("prof-1", source_type=CreditSourceType.MONTHLY) == 70
            assert await repo.sum_active_balance("prof-1", source_type=CreditSourceType.PACK) == 30


class TestPaymentRecordStore:
    """Tests for webhook idempotency records."""

    async def test_first_claim_wins(
        self, session_factory: async_sessionmaker[AsyncSession], make_profile
    ):
        await make_profile()
        store = PaymentRecordStore(session_factory)
        claim = dict(
            provider="polar",
            provider_transaction_id="txn-1",
            profile_id="prof-1",
            payment_type="pack",
            pack_id="small",
        )
        assert await store.claim(**claim) is True
        assert await store.claim(**claim) is False

    async def test_release_allows_retry(self, session_factory, make_profile):
        await make_profile()
        store = PaymentRecordStore(session_factory)
        await store.claim(
            provider="polar", provider_transaction_id="txn-1", profile_id="prof-1", payment_type="pack"
        )
        await store.release("polar", "txn-1")
        assert await store.get("polar", "txn-1") is None
        assert (
            await store.claim(
                provider="polar",
                provider_transaction_id="txn-1",
                profile_id="prof-1",
                payment_type="pack",
            )
            is True
        )

    async def test_completed_record_is_not_released(self, session_factory, make_profile):
        await make_profile()
        store = PaymentRecordStore(session_factory)
        await store.claim(
            provider="polar", provider_transaction_id="txn-1", profile_id="prof-1", payment_type="pack"
        )
        await store.complete("polar", "txn-1")
        await store.release("polar", "txn-1")

        record = await store.get("polar", "txn-1")
        assert record is not None
        assert record.status == PaymentRecordStore.STATUS_COMPLETED

    async def test_same_transaction_id_on_other_provider_is_distinct(
        self, session_factory, make_profile
    ):
        await make_profile()
        store = PaymentRecordStore(session_factory)
        for provider in ("polar", "paypal"):
            assert await store.claim(
                provider=provider,
                provider_transaction_id="txn-1",
                profile_id="prof-1",
                payment_type="pack",
            )

    async def test_find_profile_for_subscription(self, session_factory, make_profile):
        await make_profile()
        store = PaymentRecordStore(session_factory)
        await store.claim(
            provider="polar",
            provider_transaction_id="txn-1",
            profile_id="prof-1",
            payment_type="subscription",
            provider_order_id="sub-42",
            plan="pro",
        )
        assert await store.find_profile_for_subscription("polar", "sub-42") == "prof-1"
        assert await store.find_profile_for_subscription("polar", "sub-0") is None
        assert await store.find_profile_for_subscription("paypal", "sub-42") is None
