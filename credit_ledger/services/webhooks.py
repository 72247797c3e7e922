"""
Payment Event Processor - applies verified provider events to the ledger.

Order events are de-duplicated on (provider, provider_transaction_id)
before the ledger is touched: the first delivery claims the key, later
deliveries of a completed payment are acknowledged without side effects,
deliveries that race a pending claim are told to retry, and a failed
ledger mutation releases the claim so redelivery can retry.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.repository import PaymentRecordStore
from credit_ledger.models.api import ForfeitReason
from credit_ledger.models.domain import PaymentDetails, ProcessedEvent
from credit_ledger.models.events import (
    OrderPaid,
    PaymentEvent,
    SubscriptionActive,
    SubscriptionCanceled,
    SubscriptionRevoked,
)
from credit_ledger.models.result import Err
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.ledger import CreditsLedger

logger = get_logger(__name__)


class PaymentEventProcessor:
    """Dispatches each event variant to the matching ledger flow."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditsLedger | None = None,
    ) -> None:
        """Initialize processor with a session factory."""
        self.ledger = ledger or CreditsLedger(session_factory)
        self.records = PaymentRecordStore(session_factory)

    async def process(self, event: PaymentEvent) -> ProcessedEvent:
        match event:
            case OrderPaid():
                return await self._order_paid(event)
            case SubscriptionActive():
                logger.info(
                    "subscription_active_acknowledged",
                    provider=event.provider.value,
                    subscription_id=event.subscription_id,
                )
                return ProcessedEvent(ok=True, message="Acknowledged")
            case SubscriptionCanceled():
                return await self._subscription_canceled(event)
            case SubscriptionRevoked():
                return await self._subscription_revoked(event)
        raise ValueError(f"Unsupported payment event: {type(event).__name__}")

    async def _order_paid(self, event: OrderPaid) -> ProcessedEvent:
        provider = event.provider.value
        await self.ledger.subscriptions.require_profile(event.profile_id)
        claimed = await self.records.claim(
            provider=provider,
            provider_transaction_id=event.provider_transaction_id,
            profile_id=event.profile_id,
            payment_type="pack" if event.is_pack_purchase else "subscription",
            provider_order_id=event.subscription_id or event.order_id,
            plan=event.plan_id,
            pack_id=event.pack_id,
            amount_minor=event.amount_minor,
            currency=event.currency,
        )
        if not claimed:
            existing = await self.records.get(provider, event.provider_transaction_id)
            if existing is None or existing.status != PaymentRecordStore.STATUS_COMPLETED:
                # Another delivery holds the claim and may still release it
                logger.info(
                    "payment_in_flight",
                    profile_id=event.profile_id,
                    provider=provider,
                    provider_transaction_id=event.provider_transaction_id,
                )
                return ProcessedEvent(
                    ok=False,
                    message="Payment is still being processed",
                    profile_id=event.profile_id,
                    retryable=True,
                )
            return ProcessedEvent(
                ok=True,
                message="Payment already processed",
                duplicate=True,
                profile_id=event.profile_id,
            )

        try:
            if event.is_pack_purchase:
                outcome = await self.ledger.finalize_credit_pack_purchase(
                    event.profile_id,
                    event.pack_id or "",
                    PaymentDetails(
                        provider=event.provider,
                        transaction_id=event.provider_transaction_id,
                        order_id=event.order_id,
                    ),
                )
                if isinstance(outcome, Err):
                    await self.records.release(provider, event.provider_transaction_id)
                    logger.warning(
                        "pack_order_rejected",
                        profile_id=event.profile_id,
                        pack_id=event.pack_id,
                        error_kind=outcome.kind.value,
                    )
                    return ProcessedEvent(
                        ok=False, message=str(outcome.error), profile_id=event.profile_id
                    )
                message = f"Added {outcome.value.credits_added} credits"
            else:
                paid = await self.ledger.activate_subscription_with_credits(
                    event.profile_id,
                    event.plan_id or "",
                    event.billing_period,
                    is_renewal=event.is_renewal,
                )
                message = (
                    f"Subscription active, allocated {paid.allocation.credits_allocated} credits"
                )
        except Exception as e:
            await self.records.release(provider, event.provider_transaction_id)
            metrics.record_error(type(e).__name__, "order_paid")
            logger.error(
                "order_paid_failed",
                profile_id=event.profile_id,
                provider=provider,
                provider_transaction_id=event.provider_transaction_id,
                error=str(e),
            )
            raise

        await self.records.complete(provider, event.provider_transaction_id)
        logger.info(
            "order_paid_processed",
            profile_id=event.profile_id,
            provider=provider,
            provider_transaction_id=event.provider_transaction_id,
        )
        return ProcessedEvent(ok=True, message=message, profile_id=event.profile_id)

    async def _subscription_canceled(self, event: SubscriptionCanceled) -> ProcessedEvent:
        profile_id = await self.records.find_profile_for_subscription(
            event.provider.value, event.subscription_id
        )
        if profile_id is None:
            logger.warning("subscription_unknown", subscription_id=event.subscription_id)
            return ProcessedEvent(ok=True, message="Acknowledged")

        await self.ledger.subscriptions.cancel_subscription(profile_id)
        result = await self.ledger.handle_subscription_cancellation(profile_id)
        return ProcessedEvent(
            ok=True,
            message=(
                f"Forfeited {result.credits_forfeited} credits"
                if result.can_use_until is None
                else f"Credits usable until {result.can_use_until.isoformat()}"
            ),
            profile_id=profile_id,
        )

    async def _subscription_revoked(self, event: SubscriptionRevoked) -> ProcessedEvent:
        profile_id = await self.records.find_profile_for_subscription(
            event.provider.value, event.subscription_id
        )
        if profile_id is None:
            logger.warning("subscription_unknown", subscription_id=event.subscription_id)
            return ProcessedEvent(ok=True, message="Acknowledged")

        result = await self.ledger.subscriptions.end_subscription(
            profile_id, ForfeitReason.SUBSCRIPTION_ENDED
        )
        return ProcessedEvent(
            ok=True,
            message=f"Forfeited {result.credits_forfeited} credits",
            profile_id=profile_id,
        )
