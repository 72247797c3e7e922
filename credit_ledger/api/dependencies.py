"""
FastAPI Dependencies - service wiring, caller identity and API key check.

Profile identity is resolved upstream and forwarded in X-Profile-ID.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.config import settings
from credit_ledger.db.session import get_write_session_factory
from credit_ledger.services.ledger import CreditsLedger
from credit_ledger.services.webhooks import PaymentEventProcessor

logger = get_logger(__name__)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for ledger units of work (overridden in tests)."""
    return get_write_session_factory()


def get_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CreditsLedger:
    return CreditsLedger(session_factory)


def get_event_processor(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PaymentEventProcessor:
    return PaymentEventProcessor(session_factory)


async def verify_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    Require X-API-Key when a service key is configured.

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.api_key:
        return
    if x_api_key is None or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", has_key=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


async def get_profile_id(
    x_profile_id: str = Header(..., min_length=1, max_length=255, description="Caller profile ID"),
) -> str:
    """Profile the request acts on."""
    return x_profile_id.strip()
