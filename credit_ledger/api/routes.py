"""
API Routes - FastAPI endpoints over the credits ledger.

All requests/responses use Pydantic models. Expected ledger failures are
mapped to status codes: 402 insufficient credits, 403 no active
subscription, 400 invalid operation or pack, 404 unknown profile.
"""

from datetime import UTC, datetime
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.api.dependencies import (
    get_event_processor,
    get_ledger,
    get_profile_id,
    get_session_factory,
    verify_api_key,
)
from credit_ledger.exceptions import InvalidPlanError, ProfileNotFoundError
from credit_ledger.models.api import (
    BalanceBreakdownResponse,
    BreakdownEntryResponse,
    ConsumeCreditsRequest,
    ConsumeCreditsResponse,
    CreditBalanceResponse,
    CreditPackItem,
    CreditPackListResponse,
    ExpiringCreditsResponse,
    HealthResponse,
    OperationCostItem,
    OperationListResponse,
    PaymentEventRequest,
    PaymentEventResponse,
    PurchasePackRequest,
    PurchasePackResponse,
    TransactionHistoryResponse,
    TransactionItem,
    TransactionType,
)
from credit_ledger.models.domain import BreakdownEntry
from credit_ledger.models.events import event_from_payload
from credit_ledger.models.result import Err, ErrorKind
from credit_ledger.services.catalog import get_available_operations, get_available_packs
from credit_ledger.services.ledger import CreditsLedger
from credit_ledger.services.webhooks import PaymentEventProcessor

router = APIRouter()

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.NO_ACTIVE_SUBSCRIPTION: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_OPERATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_CREDIT_PACK: status.HTTP_400_BAD_REQUEST,
}


def _raise_for_err(err: Err) -> NoReturn:
    raise HTTPException(
        status_code=_STATUS_BY_KIND[err.kind],
        detail={"error": err.kind.value, "message": str(err.error)},
    )


def _profile_not_found(exc: ProfileNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Profile not found: {exc.profile_id}",
    )


def _entry(entry: BreakdownEntry | None) -> BreakdownEntryResponse | None:
    if entry is None:
        return None
    return BreakdownEntryResponse(amount=entry.amount, expires_at=entry.expires_at)


# =============================================================================
# Credits
# =============================================================================


@router.get(
    "/v1/credits/balance",
    response_model=CreditBalanceResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_balance(
    profile_id: str = Depends(get_profile_id),
    ledger: CreditsLedger = Depends(get_ledger),
) -> CreditBalanceResponse:
    """Current balance with breakdown and low/expiring signals."""
    balance = await ledger.get_credits_balance(profile_id)
    expiring = balance.expiring_credits
    return CreditBalanceResponse(
        total=balance.total,
        breakdown=BalanceBreakdownResponse(
            monthly=_entry(balance.breakdown.monthly),
            pack=_entry(balance.breakdown.pack),
        ),
        is_low=balance.is_low,
        expiring_credits=(
            ExpiringCreditsResponse(amount=expiring.amount, expires_at=expiring.expires_at)
            if expiring
            else None
        ),
    )


@router.get(
    "/v1/credits/history",
    response_model=TransactionHistoryResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_history(
    profile_id: str = Depends(get_profile_id),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    type: TransactionType | None = Query(None),
    ledger: CreditsLedger = Depends(get_ledger),
) -> TransactionHistoryResponse:
    """Paginated ledger entries, newest first."""
    history = await ledger.get_transaction_history(
        profile_id, limit=limit, offset=offset, transaction_type=type
    )
    return TransactionHistoryResponse(
        transactions=[
            TransactionItem(
                id=t.id,
                profile_id=t.profile_id,
                type=t.transaction_type,
                amount=t.amount,
                balance_after=t.balance_after,
                operation=t.operation,
                source_id=t.source_id,
                description=t.description,
                metadata=t.metadata,
                created_at=t.created_at,
            )
            for t in history.transactions
        ],
        total=history.total,
        has_more=history.has_more,
    )


@router.post(
    "/v1/credits/consume",
    response_model=ConsumeCreditsResponse,
    dependencies=[Depends(verify_api_key)],
)
async def consume_credits(
    request: ConsumeCreditsRequest,
    profile_id: str = Depends(get_profile_id),
    ledger: CreditsLedger = Depends(get_ledger),
) -> ConsumeCreditsResponse:
    """
    Spend credits for an operation.

    402 when the balance is short, 403 without an active subscription.
    """
    try:
        outcome = await ledger.consume_credits(profile_id, request.operation, request.metadata)
    except ProfileNotFoundError as exc:
        raise _profile_not_found(exc) from exc

    if isinstance(outcome, Err):
        _raise_for_err(outcome)

    result = outcome.value
    return ConsumeCreditsResponse(
        success=result.success,
        credits_used=result.credits_used,
        remaining_balance=result.remaining_balance,
        transaction_id=result.transaction_id,
        is_low=result.is_low,
    )


@router.get("/v1/credits/packs", response_model=CreditPackListResponse)
async def list_packs() -> CreditPackListResponse:
    return CreditPackListResponse(
        packs=[
            CreditPackItem(
                id=p.id,
                name=p.name,
                credits=p.credits,
                price_usd=p.price_usd,
                price_vnd=p.price_vnd,
                validity_days=p.validity_days,
            )
            for p in get_available_packs()
        ]
    )


@router.get("/v1/credits/operations", response_model=OperationListResponse)
async def list_operations() -> OperationListResponse:
    return OperationListResponse(
        operations=[
            OperationCostItem(operation=c.operation, credits=c.credits, description=c.description)
            for c in get_available_operations()
        ]
    )


@router.post(
    "/v1/credits/packs/purchase",
    response_model=PurchasePackResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def purchase_pack(
    request: PurchasePackRequest,
    profile_id: str = Depends(get_profile_id),
    ledger: CreditsLedger = Depends(get_ledger),
) -> PurchasePackResponse:
    """
    Grant a pack whose payment was already captured upstream.

    Idempotency is the caller's job; use /v1/payments/events for
    provider-confirmed orders.
    """
    try:
        outcome = await ledger.purchase_credit_pack(profile_id, request.pack_id)
    except ProfileNotFoundError as exc:
        raise _profile_not_found(exc) from exc

    if isinstance(outcome, Err):
        _raise_for_err(outcome)

    result = outcome.value
    return PurchasePackResponse(
        success=result.success,
        credits_added=result.credits_added,
        total_balance=result.total_balance,
        source_id=result.source_id,
        expires_at=result.expires_at,
        transaction_id=result.transaction_id,
    )


# =============================================================================
# Payment Events
# =============================================================================


@router.post(
    "/v1/payments/events",
    response_model=PaymentEventResponse,
    dependencies=[Depends(verify_api_key)],
)
async def payment_event(
    request: PaymentEventRequest,
    processor: PaymentEventProcessor = Depends(get_event_processor),
) -> PaymentEventResponse:
    """
    Apply a verified payment provider event.

    Duplicate deliveries are acknowledged with ok=true. A delivery that
    races another still holding the payment claim gets 409 so the
    provider retries it.
    """
    try:
        processed = await processor.process(event_from_payload(request.event))
    except ProfileNotFoundError as exc:
        raise _profile_not_found(exc) from exc
    except InvalidPlanError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid plan: {exc.plan_id}",
        ) from exc

    if processed.retryable:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=processed.message)
    return PaymentEventResponse(ok=processed.ok, message=processed.message)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
