"""
Payment Events - closed set of trusted, already verified provider events.

Signature verification happens before an event is built; these variants
only carry the fields the ledger needs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union

from credit_ledger.models.api import (
    BillingPeriod,
    OrderPaidPayload,
    PaymentEventPayload,
    PaymentProvider,
    SubscriptionActivePayload,
    SubscriptionCanceledPayload,
    SubscriptionRevokedPayload,
)


class PaymentEventKind(str, Enum):
    """Provider event kinds the ledger reacts to."""

    ORDER_PAID = "order.paid"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_REVOKED = "subscription.revoked"


@dataclass(frozen=True)
class OrderPaid:
    """Confirmed order for a credit pack or a subscription period."""

    kind: ClassVar[PaymentEventKind] = PaymentEventKind.ORDER_PAID

    provider: PaymentProvider
    provider_transaction_id: str
    profile_id: str
    pack_id: str | None = None
    plan_id: str | None = None
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    is_renewal: bool = False
    order_id: str | None = None
    subscription_id: str | None = None
    amount_minor: int = 0
    currency: str = "USD"

    def __post_init__(self) -> None:
        """Validate order shape."""
        if not self.provider_transaction_id:
            raise ValueError("provider_transaction_id cannot be empty")
        if not self.profile_id:
            raise ValueError("profile_id cannot be empty")
        if (self.pack_id is None) == (self.plan_id is None):
            raise ValueError("exactly one of pack_id or plan_id must be set")

    @property
    def is_pack_purchase(self) -> bool:
        """One-time pack order rather than a subscription payment."""
        return self.pack_id is not None


@dataclass(frozen=True)
class SubscriptionActive:
    """Provider confirmed an active subscription."""

    kind: ClassVar[PaymentEventKind] = PaymentEventKind.SUBSCRIPTION_ACTIVE

    provider: PaymentProvider
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionCanceled:
    """Subscription canceled; usable until the paid period ends."""

    kind: ClassVar[PaymentEventKind] = PaymentEventKind.SUBSCRIPTION_CANCELED

    provider: PaymentProvider
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionRevoked:
    """Subscription permanently ended."""

    kind: ClassVar[PaymentEventKind] = PaymentEventKind.SUBSCRIPTION_REVOKED

    provider: PaymentProvider
    subscription_id: str


PaymentEvent = Union[OrderPaid, SubscriptionActive, SubscriptionCanceled, SubscriptionRevoked]


def event_from_payload(payload: PaymentEventPayload) -> PaymentEvent:
    """Convert a validated API payload into its domain event variant."""
    match payload:
        case OrderPaidPayload():
            return OrderPaid(
                provider=payload.provider,
                provider_transaction_id=payload.provider_transaction_id,
                profile_id=payload.profile_id,
                pack_id=payload.pack_id,
                plan_id=payload.plan_id,
                billing_period=payload.billing_period,
                is_renewal=payload.is_renewal,
                order_id=payload.order_id,
                subscription_id=payload.subscription_id,
                amount_minor=payload.amount_minor,
                currency=payload.currency,
            )
        case SubscriptionActivePayload():
            return SubscriptionActive(
                provider=payload.provider, subscription_id=payload.subscription_id
            )
        case SubscriptionCanceledPayload():
            return SubscriptionCanceled(
                provider=payload.provider, subscription_id=payload.subscription_id
            )
        case SubscriptionRevokedPayload():
            return SubscriptionRevoked(
                provider=payload.provider, subscription_id=payload.subscription_id
            )
    raise ValueError(f"Unsupported payment event payload: {type(payload).__name__}")
