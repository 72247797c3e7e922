"""
Domain Models - Internal business logic models using dataclasses.

All data structures crossing service boundaries are immutable dataclasses;
ORM rows never leave the repository/service layer.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from credit_ledger.models.api import (
    BillingPeriod,
    CreditOperation,
    CreditSourceType,
    PaymentProvider,
    TransactionType,
)

T = TypeVar("T")

# ============================================================================
# Catalog (read-only reference data)
# ============================================================================


@dataclass(frozen=True)
class Plan:
    """Subscription plan with its credit allowance."""

    id: str
    name: str
    price_usd: float
    price_vnd: int
    monthly_credits: int
    rollover_cap_multiplier: int
    duration_days: int
    yearly_duration_days: int = 365
    features: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate plan constraints."""
        if self.monthly_credits < 0:
            raise ValueError(f"Monthly credits cannot be negative: {self.monthly_credits}")
        if self.rollover_cap_multiplier < 1:
            raise ValueError(
                f"Rollover cap multiplier must be at least 1: {self.rollover_cap_multiplier}"
            )

    @property
    def rollover_cap(self) -> int:
        """Maximum balance a recurring allocation may top up to."""
        return self.monthly_credits * self.rollover_cap_multiplier

    @property
    def yearly_credits_upfront(self) -> int:
        """Credits granted at once for a yearly subscription."""
        return self.monthly_credits * 12


@dataclass(frozen=True)
class CreditPack:
    """One-time purchasable credit pack."""

    id: str
    name: str
    credits: int
    price_usd: float
    price_vnd: int
    validity_days: int

    def __post_init__(self) -> None:
        """Validate pack constraints."""
        if self.credits <= 0:
            raise ValueError(f"Pack credits must be positive: {self.credits}")
        if self.validity_days <= 0:
            raise ValueError(f"Pack validity must be positive: {self.validity_days}")


@dataclass(frozen=True)
class CreditCost:
    """Fixed credit cost of an operation."""

    operation: CreditOperation
    credits: int
    description: str


# ============================================================================
# Ledger Records
# ============================================================================


@dataclass(frozen=True)
class CreditSourceData:
    """Immutable snapshot of a credit source."""

    id: UUID
    profile_id: str
    source_type: CreditSourceType
    amount: int
    initial_amount: int
    expires_at: datetime
    pack_id: str | None
    billing_cycle_start: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class TransactionIntent:
    """Ledger entry before persistence - immutable intent."""

    transaction_type: TransactionType
    amount: int
    balance_after: int
    operation: str | None = None
    source_id: UUID | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        """Validate sign conventions and the balance snapshot."""
        if self.balance_after < 0:
            raise ValueError(f"Balance after cannot be negative: {self.balance_after}")
        if (
            self.transaction_type
            in (TransactionType.ALLOCATION, TransactionType.PACK_PURCHASE)
            and self.amount < 0
        ):
            raise ValueError(f"{self.transaction_type.value} amount cannot be negative")
        if (
            self.transaction_type
            in (TransactionType.CONSUMPTION, TransactionType.EXPIRATION)
            and self.amount > 0
        ):
            raise ValueError(f"{self.transaction_type.value} amount cannot be positive")


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger entry after persistence."""

    id: UUID
    profile_id: str
    transaction_type: TransactionType
    amount: int
    balance_after: int
    operation: str | None
    source_id: UUID | None
    description: str | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class TransactionHistory:
    """One page of ledger entries, newest first."""

    transactions: list[TransactionData]
    total: int
    has_more: bool


# ============================================================================
# Balance
# ============================================================================


@dataclass(frozen=True)
class BreakdownEntry:
    """Balance of one source type with its earliest expiry."""

    amount: int
    expires_at: datetime


@dataclass(frozen=True)
class BalanceBreakdown:
    """Balance grouped by source type."""

    monthly: BreakdownEntry | None = None
    pack: BreakdownEntry | None = None


@dataclass(frozen=True)
class ExpiringCredits:
    """Credits expiring within a window and the earliest expiry among them."""

    amount: int
    expires_at: datetime | None


@dataclass(frozen=True)
class CreditBalance:
    """Balance view for display."""

    total: int
    breakdown: BalanceBreakdown
    is_low: bool
    expiring_credits: ExpiringCredits | None = None


# ============================================================================
# Operation Results
# ============================================================================


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of a monthly or yearly allocation."""

    credits_allocated: int
    total_balance: int
    source_id: UUID
    transaction_id: UUID


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of a successful consumption."""

    success: bool
    credits_used: int
    remaining_balance: int
    transaction_id: UUID
    is_low: bool


@dataclass(frozen=True)
class AffordabilityCheck:
    """Read-only check of whether an operation is affordable."""

    can_afford: bool
    available: int
    required: int


@dataclass(frozen=True)
class RolloverSplit:
    """How an existing balance splits when a new allocation arrives."""

    credits_to_rollover: int
    credits_to_expire: int


@dataclass(frozen=True)
class ExpirationResult:
    """Outcome of trimming monthly balance."""

    expired_credits: int
    affected_sources: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class PackPurchaseResult:
    """Outcome of a pack purchase."""

    success: bool
    credits_added: int
    total_balance: int
    source_id: UUID
    expires_at: datetime
    transaction_id: UUID


@dataclass(frozen=True)
class PaymentDetails:
    """Confirmed payment attached to a pack purchase entry."""

    provider: PaymentProvider
    transaction_id: str
    order_id: str | None = None

    def __post_init__(self) -> None:
        """Validate payment reference."""
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")


@dataclass(frozen=True)
class CreditAccessCheck:
    """Whether a profile may still spend credits, and until when."""

    can_use: bool
    reason: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ForfeitResult:
    """Outcome of zeroing every remaining credit."""

    success: bool
    credits_forfeited: int
    transaction_id: UUID | None = None


@dataclass(frozen=True)
class CancellationResult:
    """Outcome of a subscription cancellation."""

    can_use_until: datetime | None
    credits_forfeited: int
    transaction_id: UUID | None = None


@dataclass(frozen=True)
class PaymentFailureResult:
    """Grace window granted after a failed payment."""

    grace_period_ends: datetime
    credits_available: int


@dataclass(frozen=True)
class SubscriptionActivation:
    """Profile subscription fields after activation."""

    expires_at: datetime
    plan_id: str
    billing_period: BillingPeriod
    is_renewal: bool


@dataclass(frozen=True)
class PaidActivation:
    """Subscription activation and its credit grant, committed together."""

    activation: SubscriptionActivation
    allocation: AllocationResult


@dataclass(frozen=True)
class ExpiringSubscription:
    """Active subscription approaching its expiry."""

    profile_id: str
    email: str | None
    plan: str
    expires_at: datetime


@dataclass(frozen=True)
class WithCreditsResult(Generic[T]):
    """Result of work paid for with credits."""

    result: T
    credits: ConsumptionResult


@dataclass(frozen=True)
class ProcessedEvent:
    """How a payment event was handled."""

    ok: bool
    message: str
    duplicate: bool = False
    profile_id: str | None = None
    retryable: bool = False
