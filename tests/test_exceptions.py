"""
Tests for exception classes.

Covers all exception types and their typed attributes.
"""

from datetime import UTC, datetime

import pytest

from credit_ledger.exceptions import (
    CreditOperationError,
    DataIntegrityError,
    InsufficientCreditsError,
    InvalidCreditPackError,
    InvalidPlanError,
    InvalidSubscriptionPeriodError,
    LedgerError,
    NoActiveSubscriptionError,
    ProfileNotFoundError,
    UnitOfWorkError,
)


class TestLedgerError:
    """Tests for base LedgerError."""

    def test_ledger_error_is_exception(self):
        assert issubclass(LedgerError, Exception)

    @pytest.mark.parametrize(
        "exc",
        [
            InsufficientCreditsError(required=50, available=30),
            NoActiveSubscriptionError(),
            CreditOperationError("Invalid operation: x"),
            InvalidCreditPackError("x"),
            InvalidPlanError("x"),
            InvalidSubscriptionPeriodError(datetime(2026, 1, 1, tzinfo=UTC)),
            ProfileNotFoundError("x"),
            UnitOfWorkError("x"),
            DataIntegrityError("x"),
        ],
    )
    def test_all_errors_are_ledger_errors(self, exc: LedgerError):
        assert isinstance(exc, LedgerError)


class TestInsufficientCreditsError:
    """Tests for InsufficientCreditsError."""

    def test_attributes(self):
        exc = InsufficientCreditsError(required=50, available=30)
        assert exc.required == 50
        assert exc.available == 30

    def test_message_format(self):
        message = str(InsufficientCreditsError(required=50, available=30))
        assert "Insufficient credits" in message
        assert "50" in message
        assert "30" in message


class TestNoActiveSubscriptionError:
    """Tests for NoActiveSubscriptionError."""

    def test_default_reason(self):
        exc = NoActiveSubscriptionError()
        assert exc.reason == "An active subscription is required"
        assert str(exc) == exc.reason

    def test_custom_reason(self):
        assert NoActiveSubscriptionError("Grace period has expired").reason == "Grace period has expired"


class TestLookupErrors:
    """Tests for errors that carry the unknown id."""

    def test_invalid_pack(self):
        exc = InvalidCreditPackError("mega")
        assert exc.pack_id == "mega"
        assert "mega" in str(exc)

    def test_invalid_plan(self):
        exc = InvalidPlanError("gold")
        assert exc.plan_id == "gold"
        assert "gold" in str(exc)

    def test_invalid_subscription_period(self):
        ended = datetime(2026, 1, 1, tzinfo=UTC)
        exc = InvalidSubscriptionPeriodError(ended)
        assert exc.expires_at == ended
        assert "2026-01-01T00:00:00+00:00" in str(exc)

    def test_profile_not_found(self):
        exc = ProfileNotFoundError("prof-9")
        assert exc.profile_id == "prof-9"
        assert str(exc) == "Profile not found: prof-9"

    def test_unit_of_work_error(self):
        exc = UnitOfWorkError("not begun")
        assert exc.message == "not begun"
        assert "Unit of work error" in str(exc)
