"""
Tests for PackPurchaseHandler.
"""

from datetime import UTC, datetime, timedelta

import pytest

from credit_ledger.db.models import CreditSource
from credit_ledger.exceptions import InvalidCreditPackError, NoActiveSubscriptionError, ProfileNotFoundError
from credit_ledger.models.api import CreditSourceType, PaymentProvider, SubscriptionStatus, TransactionType
from credit_ledger.models.domain import PaymentDetails
from credit_ledger.services.packs import PackPurchaseHandler


class TestPurchaseCreditPack:
    """Tests for purchase_credit_pack."""

    async def test_adds_pack_source(self, session_factory, make_profile, make_source, fetch_transactions):
        await make_profile()
        await make_source(amount=1000)
        before = datetime.now(UTC)

        result = await PackPurchaseHandler(session_factory).purchase_credit_pack("prof-1", "large")

        assert result.success is True
        assert result.credits_added == 1200
        # Packs are never capped
        assert result.total_balance == 2200
        assert before + timedelta(days=90) <= result.expires_at <= datetime.now(UTC) + timedelta(days=90)

        async with session_factory() as session:
            source = await session.get(CreditSource, result.source_id)
        assert source is not None
        assert source.source_type == CreditSourceType.PACK.value
        assert source.pack_id == "large"
        assert source.amount == source.initial_amount == 1200

        [entry] = await fetch_transactions("prof-1")
        assert entry.id == result.transaction_id
        assert entry.transaction_type == TransactionType.PACK_PURCHASE.value
        assert entry.amount == 1200
        assert entry.balance_after == 2200
        assert entry.transaction_metadata["pack_id"] == "large"

    async def test_trialing_may_purchase(self, session_factory, make_profile):
        await make_profile(status=SubscriptionStatus.TRIALING)
        result = await PackPurchaseHandler(session_factory).purchase_credit_pack("prof-1", "small")
        assert result.credits_added == 200

    @pytest.mark.parametrize(
        "status",
        [SubscriptionStatus.CANCELLED, SubscriptionStatus.PAST_DUE, SubscriptionStatus.EXPIRED, None],
    )
    async def test_requires_active_subscription(
        self, session_factory, make_profile, fetch_transactions, status
    ):
        await make_profile(status=status, expires_at=datetime.now(UTC) + timedelta(days=10))

        with pytest.raises(NoActiveSubscriptionError):
            await PackPurchaseHandler(session_factory).purchase_credit_pack("prof-1", "small")
        assert await fetch_transactions("prof-1") == []

    async def test_unknown_pack(self, session_factory, make_profile):
        await make_profile()
        with pytest.raises(InvalidCreditPackError):
            await PackPurchaseHandler(session_factory).purchase_credit_pack("prof-1", "jumbo")

    async def test_unknown_profile(self, session_factory):
        with pytest.raises(ProfileNotFoundError):
            await PackPurchaseHandler(session_factory).purchase_credit_pack("ghost", "small")


class TestFinalizeCreditPackPurchase:
    """Tests for finalize_credit_pack_purchase."""

    async def test_payment_details_attached(self, session_factory, make_profile, fetch_transactions):
        await make_profile()
        payment = PaymentDetails(
            provider=PaymentProvider.POLAR, transaction_id="txn-77", order_id="order-5"
        )

        result = await PackPurchaseHandler(session_factory).finalize_credit_pack_purchase(
            "prof-1", "medium", payment
        )

        [entry] = await fetch_transactions("prof-1")
        assert entry.id == result.transaction_id
        assert entry.amount == 500
        assert entry.transaction_metadata["payment_provider"] == "polar"
        assert entry.transaction_metadata["payment_transaction_id"] == "txn-77"
        assert entry.transaction_metadata["payment_order_id"] == "order-5"
        assert entry.transaction_metadata["pack_id"] == "medium"

    async def test_ledger_does_not_deduplicate(self, session_factory, make_profile):
        """Calling twice for the same payment credits twice; callers must de-duplicate."""
        await make_profile()
        handler = PackPurchaseHandler(session_factory)
        payment = PaymentDetails(provider=PaymentProvider.SEPAY, transaction_id="txn-1")

        await handler.finalize_credit_pack_purchase("prof-1", "small", payment)
        result = await handler.finalize_credit_pack_purchase("prof-1", "small", payment)

        assert result.total_balance == 400
