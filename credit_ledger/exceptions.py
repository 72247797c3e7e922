"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes so callers never parse messages.
"""

from datetime import datetime


class LedgerError(Exception):
    """Base exception for all credits ledger errors."""

    pass


class InsufficientCreditsError(LedgerError):
    """Raised when the profile's spendable balance cannot cover an operation."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}")


class NoActiveSubscriptionError(LedgerError):
    """Raised when the subscription status does not allow the operation."""

    def __init__(self, reason: str = "An active subscription is required") -> None:
        self.reason = reason
        super().__init__(reason)


class CreditOperationError(LedgerError):
    """Raised when an unknown operation key is passed to consumption."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidCreditPackError(LedgerError):
    """Raised when an unknown credit pack is requested."""

    def __init__(self, pack_id: str) -> None:
        self.pack_id = pack_id
        super().__init__(f"Invalid credit pack ID: {pack_id}")


class InvalidPlanError(LedgerError):
    """Raised when allocation is requested for a plan missing from the catalog."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Invalid plan ID: {plan_id}")


class ProfileNotFoundError(LedgerError):
    """Raised when the profile doesn't exist."""

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile not found: {profile_id}")


class UnitOfWorkError(LedgerError):
    """Raised when a mutation is attempted outside an active unit of work."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Unit of work error: {message}")


class DataIntegrityError(LedgerError):
    """Raised when a ledger invariant would be violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class InvalidSubscriptionPeriodError(LedgerError):
    """Raised when credits are allocated for a subscription period that already ended."""

    def __init__(self, expires_at: datetime) -> None:
        self.expires_at = expires_at
        super().__init__(f"Subscription period already ended at {expires_at.isoformat()}")
