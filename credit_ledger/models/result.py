"""
Result Types - explicit success/failure values for expected business outcomes.

Callers match on Ok / Err instead of catching exceptions:

    match await ledger.consume_credits(profile_id, "chatbot-message"):
        case Ok(value=result):
            ...
        case Err(kind=ErrorKind.INSUFFICIENT_CREDITS, error=error):
            ...
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

from credit_ledger.exceptions import (
    CreditOperationError,
    InsufficientCreditsError,
    InvalidCreditPackError,
    NoActiveSubscriptionError,
)

T = TypeVar("T")

ExpectedError = Union[
    InsufficientCreditsError,
    NoActiveSubscriptionError,
    CreditOperationError,
    InvalidCreditPackError,
]

EXPECTED_ERRORS: tuple[type[Exception], ...] = (
    InsufficientCreditsError,
    NoActiveSubscriptionError,
    CreditOperationError,
    InvalidCreditPackError,
)


class ErrorKind(str, Enum):
    """Closed set of expected failure kinds."""

    INSUFFICIENT_CREDITS = "insufficient_credits"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    INVALID_OPERATION = "invalid_operation"
    INVALID_CREDIT_PACK = "invalid_credit_pack"


_KIND_BY_ERROR: dict[type[Exception], ErrorKind] = {
    InsufficientCreditsError: ErrorKind.INSUFFICIENT_CREDITS,
    NoActiveSubscriptionError: ErrorKind.NO_ACTIVE_SUBSCRIPTION,
    CreditOperationError: ErrorKind.INVALID_OPERATION,
    InvalidCreditPackError: ErrorKind.INVALID_CREDIT_PACK,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome."""

    value: T


@dataclass(frozen=True)
class Err:
    """Expected failure; no state was mutated."""

    error: ExpectedError

    @property
    def kind(self) -> ErrorKind:
        """Failure kind derived from the error type."""
        return _KIND_BY_ERROR[type(self.error)]


Outcome = Union[Ok[T], Err]
