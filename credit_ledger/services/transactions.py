"""
Transaction Ledger - append-only audit log of balance changes.

Pure reader/writer; callers supply the balance snapshot.
"""

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.db.models import CreditTransaction
from credit_ledger.db.repository import LedgerRepository, UnitOfWork
from credit_ledger.models.api import TransactionType
from credit_ledger.models.domain import TransactionData, TransactionHistory, TransactionIntent

DEFAULT_HISTORY_LIMIT = 20
DEFAULT_RECENT_LIMIT = 10


def to_transaction_data(row: CreditTransaction) -> TransactionData:
    """Snapshot an ORM row as an immutable domain object."""
    return TransactionData(
        id=row.id,
        profile_id=row.profile_id,
        transaction_type=TransactionType(row.transaction_type),
        amount=row.amount,
        balance_after=row.balance_after,
        operation=row.operation,
        source_id=row.source_id,
        description=row.description,
        metadata=dict(row.transaction_metadata or {}),
        created_at=row.created_at,
    )


class TransactionLedger:
    """Writes and pages through credit transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize ledger with a session factory."""
        self.session_factory = session_factory

    async def create_transaction(
        self,
        uow: UnitOfWork,
        transaction_type: TransactionType,
        amount: int,
        balance_after: int,
        *,
        operation: str | None = None,
        source_id: UUID | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionData:
        """
        Append one ledger entry inside the caller's unit of work.

        Metadata defaults to an empty mapping.
        """
        intent = TransactionIntent(
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            operation=operation,
            source_id=source_id,
            description=description,
            metadata=metadata or {},
        )
        row = await uow.ledger.add_transaction(uow.profile_id, intent)
        return to_transaction_data(row)

    async def get_transaction_history(
        self,
        profile_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
        transaction_type: TransactionType | None = None,
    ) -> TransactionHistory:
        """Page of transactions, newest first."""
        if limit < 1:
            raise ValueError(f"limit must be positive: {limit}")
        if offset < 0:
            raise ValueError(f"offset cannot be negative: {offset}")

        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            rows = await repo.list_transactions(
                profile_id, limit=limit, offset=offset, transaction_type=transaction_type
            )
            total = await repo.count_transactions(profile_id, transaction_type)

        return TransactionHistory(
            transactions=[to_transaction_data(r) for r in rows],
            total=total,
            has_more=offset + len(rows) < total,
        )

    async def get_recent_transactions(
        self, profile_id: str, limit: int = DEFAULT_RECENT_LIMIT
    ) -> list[TransactionData]:
        history = await self.get_transaction_history(profile_id, limit=limit)
        return history.transactions
