"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. Column types are portable
(Uuid, JSON with a JSONB variant) so the schema also builds on SQLite.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp; naive values read back are UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


MetadataJSON = JSON().with_variant(JSONB(), "postgresql")


class Profile(Base):
    """
    ORM model for profiles table.

    Holds the subscription state the ledger gates on. The row doubles as
    the per-profile lock target for every ledger mutation.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription state
    plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_period: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "subscription_status IS NULL OR subscription_status IN "
            "('active', 'trialing', 'cancelled', 'past_due', 'expired')",
            name="ck_profiles_subscription_status",
        ),
        Index("idx_profiles_subscription_expires_at", "subscription_expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Profile(id={self.id}, plan={self.plan}, "
            f"status={self.subscription_status}, expires_at={self.subscription_expires_at})>"
        )


class CreditSource(Base):
    """
    ORM model for credit_sources table.

    A bucket of credits with a remaining amount and a hard expiry.
    """

    __tablename__ = "credit_sources"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    profile_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )

    source_type: Mapped[str] = mapped_column("type", String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    initial_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Provenance
    pack_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_cycle_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_credit_sources_amount_non_negative"),
        CheckConstraint("amount <= initial_amount", name="ck_credit_sources_amount_le_initial"),
        CheckConstraint("type IN ('monthly', 'pack')", name="ck_credit_sources_type"),
        Index("idx_credit_sources_profile_expires", "profile_id", "expires_at"),
        Index("idx_credit_sources_profile_type", "profile_id", "type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditSource(id={self.id}, profile_id={self.profile_id}, "
            f"type={self.source_type}, amount={self.amount}/{self.initial_amount})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger of every balance change. Rows are never updated,
    except for enriching metadata with payment details after a purchase.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    profile_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )

    transaction_type: Mapped[str] = mapped_column("type", String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    operation: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("credit_sources.id", ondelete="SET NULL"), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", MetadataJSON, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_non_negative"),
        CheckConstraint(
            "type IN ('allocation', 'pack_purchase', 'consumption', 'expiration', 'adjustment')",
            name="ck_credit_transactions_type",
        ),
        Index("idx_credit_transactions_profile_created", "profile_id", "created_at"),
        Index("idx_credit_transactions_profile_type", "profile_id", "type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, profile_id={self.profile_id}, "
            f"type={self.transaction_type}, amount={self.amount})>"
        )


class PaymentRecord(Base):
    """
    ORM model for payment_records table.

    One row per provider transaction; the unique key makes event
    processing idempotent.
    """

    __tablename__ = "payment_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    profile_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)  # pack | subscription
    plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pack_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_transaction_id", name="uq_payment_records_provider_txn"
        ),
        CheckConstraint(
            "status IN ('pending', 'completed')", name="ck_payment_records_status"
        ),
        CheckConstraint(
            "payment_type IN ('pack', 'subscription')", name="ck_payment_records_payment_type"
        ),
        Index("idx_payment_records_provider_order", "provider_order_id"),
        Index("idx_payment_records_profile", "profile_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentRecord(id={self.id}, provider={self.provider}, "
            f"txn={self.provider_transaction_id}, status={self.status})>"
        )
