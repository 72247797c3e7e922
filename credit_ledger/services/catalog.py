"""
Plan, credit pack and operation cost catalog.

Read-only reference data; lookups raise the ledger's typed errors for
unknown ids.
"""

from credit_ledger.exceptions import CreditOperationError, InvalidCreditPackError, InvalidPlanError
from credit_ledger.models.api import BillingPeriod, CreditOperation
from credit_ledger.models.domain import CreditCost, CreditPack, Plan

MONTHLY_DURATION_DAYS = 30
YEARLY_DURATION_DAYS = 365

PLANS: dict[str, Plan] = {
    "free": Plan(
        id="free",
        name="Free",
        price_usd=0.0,
        price_vnd=0,
        monthly_credits=50,
        rollover_cap_multiplier=1,
        duration_days=0,
        features=("read-only",),
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        price_usd=9.99,
        price_vnd=99_000,
        monthly_credits=500,
        rollover_cap_multiplier=2,
        duration_days=MONTHLY_DURATION_DAYS,
        features=("full-access", "unlimited-videos", "rag-search"),
    ),
    "enterprise": Plan(
        id="enterprise",
        name="Enterprise",
        price_usd=29.99,
        price_vnd=299_000,
        monthly_credits=2000,
        rollover_cap_multiplier=2,
        duration_days=MONTHLY_DURATION_DAYS,
        features=(
            "full-access",
            "unlimited-videos",
            "rag-search",
            "priority-support",
            "api-access",
        ),
    ),
}

CREDIT_PACKS: dict[str, CreditPack] = {
    "small": CreditPack(
        id="small", name="Small Pack", credits=200, price_usd=4.99, price_vnd=49_000, validity_days=90
    ),
    "medium": CreditPack(
        id="medium", name="Medium Pack", credits=500, price_usd=9.99, price_vnd=99_000, validity_days=90
    ),
    "large": CreditPack(
        id="large",
        name="Large Pack",
        credits=1200,
        price_usd=19.99,
        price_vnd=199_000,
        validity_days=90,
    ),
}

CREDIT_COSTS: dict[str, CreditCost] = {
    cost.operation.value: cost
    for cost in (
        CreditCost(CreditOperation.IMAGE_GEN_BASIC, 10, "Basic AI image generation"),
        CreditCost(CreditOperation.IMAGE_GEN_PREMIUM, 25, "Premium AI image generation"),
        CreditCost(CreditOperation.VIDEO_GEN_SHORT, 50, "Short video generation (<30s)"),
        CreditCost(CreditOperation.VIDEO_GEN_LONG, 100, "Long video generation (30s+)"),
        CreditCost(CreditOperation.CHATBOT_MESSAGE, 1, "AI chatbot interaction"),
    )
}


# ============================================================================
# Plans
# ============================================================================


def get_plan(plan_id: str) -> Plan:
    """
    Get plan configuration by ID.

    Raises:
        InvalidPlanError: If plan ID not found
    """
    plan = PLANS.get(plan_id)
    if plan is None:
        raise InvalidPlanError(plan_id)
    return plan


def get_plan_rollover_cap(plan_id: str) -> int:
    """Maximum balance a monthly allocation may top up to."""
    return get_plan(plan_id).rollover_cap


def get_yearly_credits(plan_id: str) -> int:
    """Credits granted upfront for a yearly subscription."""
    return get_plan(plan_id).yearly_credits_upfront


def get_plan_duration(plan_id: str, billing_period: BillingPeriod) -> int:
    """Subscription period length in days."""
    plan = get_plan(plan_id)
    if billing_period == BillingPeriod.YEARLY:
        return plan.yearly_duration_days
    return plan.duration_days or MONTHLY_DURATION_DAYS


def is_paid_plan(plan_id: str) -> bool:
    plan = PLANS.get(plan_id)
    return plan is not None and plan.price_usd > 0


def get_plan_price(plan_id: str, currency: str) -> float | int:
    """Monthly plan price in USD or VND."""
    plan = get_plan(plan_id)
    return plan.price_vnd if currency.upper() == "VND" else plan.price_usd


# ============================================================================
# Credit Packs
# ============================================================================


def get_credit_pack(pack_id: str) -> CreditPack:
    """
    Get credit pack by ID.

    Raises:
        InvalidCreditPackError: If pack ID not found
    """
    pack = CREDIT_PACKS.get(pack_id)
    if pack is None:
        raise InvalidCreditPackError(pack_id)
    return pack


def is_valid_pack_id(pack_id: str) -> bool:
    return pack_id in CREDIT_PACKS


def get_available_packs() -> list[CreditPack]:
    """All purchasable packs, smallest first."""
    return sorted(CREDIT_PACKS.values(), key=lambda p: p.credits)


def get_pack_price(pack_id: str, currency: str) -> float | int:
    """Pack price in USD or VND."""
    pack = get_credit_pack(pack_id)
    return pack.price_vnd if currency.upper() == "VND" else pack.price_usd


# ============================================================================
# Operation Costs
# ============================================================================


def get_credit_cost(operation: str) -> int:
    """
    Get the credit cost of an operation.

    Raises:
        CreditOperationError: If the operation is unknown
    """
    cost = CREDIT_COSTS.get(operation)
    if cost is None:
        raise CreditOperationError(f"Invalid operation: {operation}")
    return cost.credits


def is_valid_operation(operation: str) -> bool:
    return operation in CREDIT_COSTS


def get_available_operations() -> list[CreditCost]:
    return list(CREDIT_COSTS.values())
