"""
Pack Purchase Handler - one-time credit packs for subscribers.

Packs are an add-on: they need an active or trialing subscription, carry
a fixed validity window and are never capped.
"""

import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.models import utc_now
from credit_ledger.db.repository import UnitOfWork
from credit_ledger.exceptions import DataIntegrityError, NoActiveSubscriptionError
from credit_ledger.models.api import CreditSourceType, SubscriptionStatus, TransactionType
from credit_ledger.models.domain import CreditPack, PackPurchaseResult, PaymentDetails
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.catalog import get_credit_pack
from credit_ledger.services.expiration import calculate_pack_expiration_date
from credit_ledger.services.transactions import TransactionLedger

logger = get_logger(__name__)

PACK_ELIGIBLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class PackPurchaseHandler:
    """Turns a confirmed pack payment into a pack credit source."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize handler with a session factory."""
        self.session_factory = session_factory
        self.transactions = TransactionLedger(session_factory)

    async def purchase_credit_pack(self, profile_id: str, pack_id: str) -> PackPurchaseResult:
        """
        Add a pack's credits to the profile.

        Raises:
            InvalidCreditPackError: Unknown pack
            NoActiveSubscriptionError: Subscription not active or trialing
            ProfileNotFoundError: Profile does not exist
        """
        return await self._purchase(profile_id, pack_id, payment=None)

    async def finalize_credit_pack_purchase(
        self, profile_id: str, pack_id: str, payment: PaymentDetails
    ) -> PackPurchaseResult:
        """
        Purchase a pack and record the confirming payment on its ledger entry.

        Duplicate payment notifications must be filtered by the caller.
        """
        return await self._purchase(profile_id, pack_id, payment=payment)

    async def _purchase(
        self, profile_id: str, pack_id: str, payment: PaymentDetails | None
    ) -> PackPurchaseResult:
        pack = get_credit_pack(pack_id)

        start = time.perf_counter()
        with trace_operation("purchase_credit_pack", profile_id=profile_id, pack_id=pack.id):
            async with UnitOfWork(self.session_factory, profile_id) as uow:
                status = uow.profile.subscription_status
                if status not in PACK_ELIGIBLE_STATUSES:
                    logger.warning(
                        "pack_purchase_rejected",
                        profile_id=profile_id,
                        pack_id=pack.id,
                        subscription_status=status,
                    )
                    raise NoActiveSubscriptionError(
                        "An active subscription is required to purchase credit packs"
                    )

                result = await self._add_pack(uow, pack)
                if payment is not None:
                    await self._attach_payment(uow, result, payment)

        metrics.record_pack_purchase(pack.id, time.perf_counter() - start)
        logger.info(
            "credit_pack_purchased",
            profile_id=profile_id,
            pack_id=pack.id,
            credits_added=pack.credits,
            total_balance=result.total_balance,
            expires_at=result.expires_at.isoformat(),
            payment_provider=payment.provider.value if payment else None,
        )
        return result

    async def _add_pack(self, uow: UnitOfWork, pack: CreditPack) -> PackPurchaseResult:
        now = utc_now()
        expires_at = calculate_pack_expiration_date(now, pack.validity_days)
        repo = uow.ledger

        source = await repo.add_source(
            uow.profile_id,
            source_type=CreditSourceType.PACK,
            amount=pack.credits,
            initial_amount=pack.credits,
            expires_at=expires_at,
            pack_id=pack.id,
        )
        total = await repo.sum_active_balance(uow.profile_id, now=now)

        transaction = await self.transactions.create_transaction(
            uow,
            TransactionType.PACK_PURCHASE,
            pack.credits,
            total,
            source_id=source.id,
            description=f"Purchased {pack.name}",
            metadata={
                "pack_id": pack.id,
                "pack_name": pack.name,
                "expires_at": expires_at.isoformat(),
            },
        )
        return PackPurchaseResult(
            success=True,
            credits_added=pack.credits,
            total_balance=total,
            source_id=source.id,
            expires_at=expires_at,
            transaction_id=transaction.id,
        )

    async def _attach_payment(
        self, uow: UnitOfWork, result: PackPurchaseResult, payment: PaymentDetails
    ) -> None:
        repo = uow.ledger
        transaction = await repo.get_transaction(result.transaction_id)
        if transaction is None:
            raise DataIntegrityError(f"Pack transaction {result.transaction_id} not found")
        await repo.attach_payment_details(
            transaction,
            {
                "payment_provider": payment.provider.value,
                "payment_transaction_id": payment.transaction_id,
                "payment_order_id": payment.order_id,
            },
        )
