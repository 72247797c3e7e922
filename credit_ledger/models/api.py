"""
API Models - Pydantic models for request/response validation.

Enumerations shared by the ORM, domain and HTTP layers also live here.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class SubscriptionStatus(str, Enum):
    """Subscription status stored on the profile."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class BillingPeriod(str, Enum):
    """Subscription billing period."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class CreditSourceType(str, Enum):
    """Kind of balance-bearing grant."""

    MONTHLY = "monthly"
    PACK = "pack"


class TransactionType(str, Enum):
    """Credit ledger entry type."""

    ALLOCATION = "allocation"
    PACK_PURCHASE = "pack_purchase"
    CONSUMPTION = "consumption"
    EXPIRATION = "expiration"
    ADJUSTMENT = "adjustment"


class CreditOperation(str, Enum):
    """Billable operations with a fixed credit cost."""

    IMAGE_GEN_BASIC = "image-gen-basic"
    IMAGE_GEN_PREMIUM = "image-gen-premium"
    VIDEO_GEN_SHORT = "video-gen-short"
    VIDEO_GEN_LONG = "video-gen-long"
    CHATBOT_MESSAGE = "chatbot-message"


class ForfeitReason(str, Enum):
    """Why every remaining credit of a profile was zeroed."""

    SUBSCRIPTION_ENDED = "subscription_ended"
    PAYMENT_FAILED = "payment_failed"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class PaymentProvider(str, Enum):
    """Payment providers that deliver order and subscription events."""

    POLAR = "polar"
    PAYPAL = "paypal"
    SEPAY = "sepay"


# ============================================================================
# Balance Models
# ============================================================================


class BreakdownEntryResponse(BaseModel):
    """Balance held by one source type."""

    amount: int
    expires_at: datetime


class BalanceBreakdownResponse(BaseModel):
    """Balance grouped by source type."""

    monthly: BreakdownEntryResponse | None = None
    pack: BreakdownEntryResponse | None = None


class ExpiringCreditsResponse(BaseModel):
    """Credits that expire soon."""

    amount: int
    expires_at: datetime


class CreditBalanceResponse(BaseModel):
    """GET /v1/credits/balance response."""

    total: int
    breakdown: BalanceBreakdownResponse
    is_low: bool
    expiring_credits: ExpiringCreditsResponse | None = None


# ============================================================================
# Consumption Models
# ============================================================================


class ConsumeCreditsRequest(BaseModel):
    """POST /v1/credits/consume request body."""

    operation: str = Field(..., min_length=1, max_length=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConsumeCreditsResponse(BaseModel):
    """POST /v1/credits/consume response."""

    success: bool
    credits_used: int
    remaining_balance: int
    transaction_id: UUID
    is_low: bool


# ============================================================================
# Transaction History Models
# ============================================================================


class TransactionItem(BaseModel):
    """Single ledger entry in history response."""

    id: UUID
    profile_id: str
    type: TransactionType
    amount: int
    balance_after: int
    operation: str | None = None
    source_id: UUID | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class TransactionHistoryResponse(BaseModel):
    """GET /v1/credits/history response."""

    transactions: list[TransactionItem]
    total: int
    has_more: bool


# ============================================================================
# Catalog Models
# ============================================================================


class CreditPackItem(BaseModel):
    """Purchasable credit pack."""

    id: str
    name: str
    credits: int
    price_usd: float
    price_vnd: int
    validity_days: int


class CreditPackListResponse(BaseModel):
    """GET /v1/credits/packs response."""

    packs: list[CreditPackItem]


class OperationCostItem(BaseModel):
    """Billable operation and its cost."""

    operation: CreditOperation
    credits: int
    description: str


class OperationListResponse(BaseModel):
    """GET /v1/credits/operations response."""

    operations: list[OperationCostItem]


# ============================================================================
# Pack Purchase Models
# ============================================================================


class PurchasePackRequest(BaseModel):
    """POST /v1/credits/packs/purchase request body."""

    pack_id: str = Field(..., min_length=1, max_length=50)


class PurchasePackResponse(BaseModel):
    """POST /v1/credits/packs/purchase response."""

    success: bool
    credits_added: int
    total_balance: int
    source_id: UUID
    expires_at: datetime
    transaction_id: UUID


# ============================================================================
# Payment Event Models (already verified by the caller)
# ============================================================================


class OrderPaidPayload(BaseModel):
    """Confirmed one-time or subscription order."""

    type: Literal["order.paid"]
    provider: PaymentProvider
    provider_transaction_id: str = Field(..., min_length=1, max_length=255)
    profile_id: str = Field(..., min_length=1, max_length=255)
    pack_id: str | None = Field(None, max_length=50)
    plan_id: str | None = Field(None, max_length=50)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    is_renewal: bool = False
    order_id: str | None = Field(None, max_length=255)
    subscription_id: str | None = Field(None, max_length=255)
    amount_minor: int = Field(0, ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper()

    @model_validator(mode="after")
    def validate_product(self) -> "OrderPaidPayload":
        """An order buys exactly one thing: a pack or a plan."""
        if (self.pack_id is None) == (self.plan_id is None):
            raise ValueError("exactly one of pack_id or plan_id must be set")
        return self


class SubscriptionActivePayload(BaseModel):
    """Provider confirmed the subscription is active."""

    type: Literal["subscription.active"]
    provider: PaymentProvider
    subscription_id: str = Field(..., min_length=1, max_length=255)


class SubscriptionCanceledPayload(BaseModel):
    """Customer canceled; access continues until period end."""

    type: Literal["subscription.canceled"]
    provider: PaymentProvider
    subscription_id: str = Field(..., min_length=1, max_length=255)


class SubscriptionRevokedPayload(BaseModel):
    """Subscription ended for good."""

    type: Literal["subscription.revoked"]
    provider: PaymentProvider
    subscription_id: str = Field(..., min_length=1, max_length=255)


PaymentEventPayload = Annotated[
    OrderPaidPayload
    | SubscriptionActivePayload
    | SubscriptionCanceledPayload
    | SubscriptionRevokedPayload,
    Field(discriminator="type"),
]


class PaymentEventRequest(BaseModel):
    """POST /v1/payments/events request body."""

    event: PaymentEventPayload


class PaymentEventResponse(BaseModel):
    """POST /v1/payments/events response."""

    ok: bool
    message: str


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
