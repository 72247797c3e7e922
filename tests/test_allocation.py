"""
Tests for AllocationEngine.

Covers cap enforcement, the at-cap no-op, rollover trimming and yearly grants.
"""

from datetime import UTC, datetime, timedelta

import pytest

from credit_ledger.db.models import CreditSource
from credit_ledger.exceptions import InvalidPlanError, InvalidSubscriptionPeriodError
from credit_ledger.models.api import BillingPeriod, CreditSourceType, TransactionType
from credit_ledger.services.allocation import (
    AllocationEngine,
    calculate_activation_duration_days,
    calculate_capped_allocation,
)


class TestCappedAllocation:
    """Tests for the pure cap calculation."""

    def test_full_grant_under_cap(self):
        assert calculate_capped_allocation(0, 500, 1000) == 500
        assert calculate_capped_allocation(500, 500, 1000) == 500

    def test_truncated_to_room_left(self):
        assert calculate_capped_allocation(800, 500, 1000) == 200

    def test_zero_when_at_or_above_cap(self):
        assert calculate_capped_allocation(1000, 500, 1000) == 0
        assert calculate_capped_allocation(1500, 500, 1000) == 0


class TestMonthlyAllocation:
    """Tests for allocate_monthly_credits."""

    async def test_first_allocation(self, session_factory, make_profile, fetch_transactions):
        await make_profile()
        start = datetime.now(UTC) - timedelta(days=1)

        result = await AllocationEngine(session_factory).allocate_monthly_credits(
            "prof-1", "pro", billing_cycle_start=start
        )

        assert result.credits_allocated == 500
        assert result.total_balance == 500
        [entry] = await fetch_transactions("prof-1")
        assert entry.transaction_type == TransactionType.ALLOCATION.value
        assert entry.amount == 500
        assert entry.balance_after == 500
        assert entry.source_id == result.source_id
        assert entry.transaction_metadata["rollover_cap_applied"] is False

    async def test_source_expires_after_cycle(self, session_factory, make_profile):
        await make_profile()
        start = datetime.now(UTC)

        result = await AllocationEngine(session_factory).allocate_monthly_credits(
            "prof-1", "pro", billing_cycle_start=start, duration_days=10
        )

        async with session_factory() as session:
            source = await session.get(CreditSource, result.source_id)
        assert source is not None
        assert source.expires_at == start + timedelta(days=10)
        assert source.billing_cycle_start == start
        assert source.source_type == CreditSourceType.MONTHLY.value

    async def test_cap_enforcement(self, session_factory, make_profile, make_source, fetch_transactions):
        """Existing 800 on a 1000 cap admits only 200 of the 500 grant."""
        await make_profile()
        await make_source(amount=800, initial_amount=1000)

        result = await AllocationEngine(session_factory).allocate_monthly_credits("prof-1", "pro")

        assert result.credits_allocated == 200
        assert result.total_balance == 1000
        [entry] = await fetch_transactions("prof-1")
        assert "rollover cap applied" in entry.description
        assert entry.transaction_metadata["original_amount"] == 500

    async def test_at_cap_is_a_noop_grant(
        self, session_factory, make_profile, make_source, fetch_transactions
    ):
        await make_profile()
        await make_source(amount=1000)

        result = await AllocationEngine(session_factory).allocate_monthly_credits("prof-1", "pro")

        assert result.credits_allocated == 0
        assert result.total_balance == 1000
        [entry] = await fetch_transactions("prof-1")
        assert entry.amount == 0
        assert "at rollover cap" in entry.description

    async def test_pack_balance_counts_against_cap(self, session_factory, make_profile, make_source):
        await make_profile()
        await make_source(amount=300)
        await make_source(amount=700, source_type=CreditSourceType.PACK, pack_id="large")

        result = await AllocationEngine(session_factory).allocate_monthly_credits("prof-1", "pro")

        assert result.credits_allocated == 0
        assert result.total_balance == 1000

    async def test_excess_carried_monthly_is_trimmed(
        self, session_factory, make_profile, make_source, fetch_source, fetch_transactions
    ):
        """Monthly balance above the cap expires before the zero grant is logged."""
        await make_profile()
        older = await make_source(amount=600, expires_in=timedelta(days=3))
        newer = await make_source(amount=600, expires_in=timedelta(days=20))
        pack = await make_source(amount=100, source_type=CreditSourceType.PACK, pack_id="small")

        result = await AllocationEngine(session_factory).allocate_monthly_credits("prof-1", "pro")

        assert (await fetch_source(older)).amount == 400
        assert (await fetch_source(newer)).amount == 600
        assert (await fetch_source(pack)).amount == 100
        assert result.credits_allocated == 0
        assert result.total_balance == 1100

        expiration, allocation = await fetch_transactions("prof-1")
        assert expiration.transaction_type == TransactionType.EXPIRATION.value
        assert expiration.amount == -200
        assert expiration.balance_after == 1100
        assert allocation.balance_after == 1100

    async def test_expired_sources_ignored(self, session_factory, make_profile, make_source):
        await make_profile()
        await make_source(amount=1000, expires_in=timedelta(days=-1))

        result = await AllocationEngine(session_factory).allocate_monthly_credits("prof-1", "pro")
        assert result.credits_allocated == 500

    async def test_unknown_plan_leaves_no_state(self, session_factory, make_profile, fetch_transactions):
        await make_profile()
        with pytest.raises(InvalidPlanError):
            await AllocationEngine(session_factory).allocate_monthly_credits("prof-1", "diamond")
        assert await fetch_transactions("prof-1") == []


class TestYearlyAllocation:
    """Tests for allocate_yearly_credits."""

    async def test_full_yearly_grant_ignores_cap(self, session_factory, make_profile, make_source):
        await make_profile()
        await make_source(amount=900)
        start = datetime.now(UTC)

        result = await AllocationEngine(session_factory).allocate_yearly_credits(
            "prof-1", "pro", billing_cycle_start=start
        )

        assert result.credits_allocated == 6000
        assert result.total_balance == 6900

        async with session_factory() as session:
            source = await session.get(CreditSource, result.source_id)
        assert source is not None
        assert source.expires_at == start + timedelta(days=365)
        assert source.initial_amount == 6000

    async def test_unknown_plan(self, session_factory, make_profile):
        await make_profile()
        with pytest.raises(InvalidPlanError):
            await AllocationEngine(session_factory).allocate_yearly_credits("prof-1", "nope")


class TestActivationAllocation:
    """Tests for allocate_credits_on_subscription_activation."""

    async def test_monthly_duration_matches_subscription(self, session_factory, make_profile):
        await make_profile()
        expires_at = datetime.now(UTC) + timedelta(days=33, hours=2)

        result = await AllocationEngine(session_factory).allocate_credits_on_subscription_activation(
            "prof-1", "pro", expires_at
        )

        async with session_factory() as session:
            source = await session.get(CreditSource, result.source_id)
        assert source is not None
        # ceil(33 days 2 hours) = 34 days from the cycle start
        assert source.expires_at - source.billing_cycle_start == timedelta(days=34)
        assert result.credits_allocated == 500

    async def test_yearly_dispatch(self, session_factory, make_profile):
        await make_profile()
        result = await AllocationEngine(session_factory).allocate_credits_on_subscription_activation(
            "prof-1",
            "enterprise",
            datetime.now(UTC) + timedelta(days=365),
            BillingPeriod.YEARLY,
        )
        assert result.credits_allocated == 24_000

    async def test_unknown_plan(self, session_factory, make_profile):
        await make_profile()
        with pytest.raises(InvalidPlanError):
            await AllocationEngine(session_factory).allocate_credits_on_subscription_activation(
                "prof-1", "nope", datetime.now(UTC) + timedelta(days=30)
            )

    async def test_ended_period_rejected_without_writes(
        self, session_factory, make_profile, make_source, fetch_transactions
    ):
        await make_profile()
        await make_source(amount=120)
        engine = AllocationEngine(session_factory)

        with pytest.raises(InvalidSubscriptionPeriodError):
            await engine.allocate_credits_on_subscription_activation(
                "prof-1", "pro", datetime.now(UTC) - timedelta(days=1)
            )

        assert await fetch_transactions("prof-1") == []
        result = await engine.allocate_monthly_credits("prof-1", "pro")
        [entry] = await fetch_transactions("prof-1")
        assert entry.balance_after == result.total_balance == 620

    @pytest.mark.parametrize("duration_days", [0, -3])
    async def test_non_positive_duration_rejected(self, session_factory, make_profile, duration_days):
        await make_profile()
        with pytest.raises(ValueError):
            await AllocationEngine(session_factory).allocate_monthly_credits(
                "prof-1", "pro", duration_days=duration_days
            )


class TestActivationDuration:
    """Tests for calculate_activation_duration_days."""

    NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)

    def test_rounds_partial_day_up(self):
        assert calculate_activation_duration_days(self.NOW + timedelta(days=2, minutes=1), self.NOW) == 3

    def test_whole_days_exact(self):
        assert calculate_activation_duration_days(self.NOW + timedelta(days=30), self.NOW) == 30

    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=-1), timedelta(days=-7)])
    def test_ended_period_raises(self, offset):
        with pytest.raises(InvalidSubscriptionPeriodError) as exc_info:
            calculate_activation_duration_days(self.NOW + offset, self.NOW)
        assert exc_info.value.expires_at == self.NOW + offset
