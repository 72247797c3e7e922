"""
Tests for domain models, result types and payment events.
"""

import pytest

from credit_ledger.exceptions import (
    CreditOperationError,
    InsufficientCreditsError,
    InvalidCreditPackError,
    NoActiveSubscriptionError,
)
from credit_ledger.models.api import (
    OrderPaidPayload,
    PaymentEventRequest,
    PaymentProvider,
    SubscriptionCanceledPayload,
    TransactionType,
)
from credit_ledger.models.domain import CreditPack, PaymentDetails, Plan, TransactionIntent
from credit_ledger.models.events import (
    OrderPaid,
    PaymentEventKind,
    SubscriptionCanceled,
    SubscriptionRevoked,
    event_from_payload,
)
from credit_ledger.models.result import Err, ErrorKind, Ok


class TestPlan:
    """Tests for Plan domain model."""

    def test_rollover_cap_and_yearly_credits(self):
        plan = Plan(
            id="p",
            name="P",
            price_usd=1.0,
            price_vnd=1,
            monthly_credits=500,
            rollover_cap_multiplier=2,
            duration_days=30,
        )
        assert plan.rollover_cap == 1000
        assert plan.yearly_credits_upfront == 6000

    def test_negative_monthly_credits_rejected(self):
        with pytest.raises(ValueError, match="Monthly credits"):
            Plan(
                id="p",
                name="P",
                price_usd=1.0,
                price_vnd=1,
                monthly_credits=-1,
                rollover_cap_multiplier=2,
                duration_days=30,
            )

    def test_multiplier_below_one_rejected(self):
        with pytest.raises(ValueError, match="multiplier"):
            Plan(
                id="p",
                name="P",
                price_usd=1.0,
                price_vnd=1,
                monthly_credits=10,
                rollover_cap_multiplier=0,
                duration_days=30,
            )


class TestCreditPack:
    """Tests for CreditPack domain model."""

    def test_zero_credits_rejected(self):
        with pytest.raises(ValueError):
            CreditPack(id="x", name="X", credits=0, price_usd=1.0, price_vnd=1, validity_days=90)

    def test_zero_validity_rejected(self):
        with pytest.raises(ValueError):
            CreditPack(id="x", name="X", credits=10, price_usd=1.0, price_vnd=1, validity_days=0)


class TestTransactionIntent:
    """Tests for ledger entry sign conventions."""

    def test_consumption_must_be_negative(self):
        with pytest.raises(ValueError, match="cannot be positive"):
            TransactionIntent(TransactionType.CONSUMPTION, amount=10, balance_after=0)

    def test_allocation_must_be_non_negative(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            TransactionIntent(TransactionType.ALLOCATION, amount=-10, balance_after=0)

    def test_zero_allocation_is_allowed(self):
        intent = TransactionIntent(TransactionType.ALLOCATION, amount=0, balance_after=1000)
        assert intent.amount == 0

    def test_negative_balance_after_rejected(self):
        with pytest.raises(ValueError, match="Balance after"):
            TransactionIntent(TransactionType.EXPIRATION, amount=-5, balance_after=-1)

    def test_adjustment_accepts_either_sign(self):
        TransactionIntent(TransactionType.ADJUSTMENT, amount=-5, balance_after=0)
        TransactionIntent(TransactionType.ADJUSTMENT, amount=5, balance_after=5)


class TestPaymentDetails:
    def test_empty_transaction_id_rejected(self):
        with pytest.raises(ValueError):
            PaymentDetails(provider=PaymentProvider.POLAR, transaction_id="")


class TestResult:
    """Tests for Ok / Err outcome values."""

    @pytest.mark.parametrize(
        "error,kind",
        [
            (InsufficientCreditsError(required=10, available=0), ErrorKind.INSUFFICIENT_CREDITS),
            (NoActiveSubscriptionError(), ErrorKind.NO_ACTIVE_SUBSCRIPTION),
            (CreditOperationError("Invalid operation: x"), ErrorKind.INVALID_OPERATION),
            (InvalidCreditPackError("x"), ErrorKind.INVALID_CREDIT_PACK),
        ],
    )
    def test_err_kind_follows_error_type(self, error, kind):
        assert Err(error).kind is kind

    def test_match_on_outcome(self):
        outcome = Err(InsufficientCreditsError(required=50, available=30))
        match outcome:
            case Ok():
                pytest.fail("expected Err")
            case Err(error=InsufficientCreditsError(required=required)):
                assert required == 50

    def test_ok_wraps_value(self):
        assert Ok(5).value == 5


class TestPaymentEvents:
    """Tests for event variants and payload conversion."""

    def test_order_needs_exactly_one_product(self):
        with pytest.raises(ValueError, match="exactly one"):
            OrderPaid(
                provider=PaymentProvider.POLAR,
                provider_transaction_id="txn-1",
                profile_id="prof-1",
            )
        with pytest.raises(ValueError, match="exactly one"):
            OrderPaid(
                provider=PaymentProvider.POLAR,
                provider_transaction_id="txn-1",
                profile_id="prof-1",
                pack_id="small",
                plan_id="pro",
            )

    def test_order_kind_and_pack_flag(self):
        event = OrderPaid(
            provider=PaymentProvider.SEPAY,
            provider_transaction_id="txn-1",
            profile_id="prof-1",
            pack_id="small",
        )
        assert event.kind is PaymentEventKind.ORDER_PAID
        assert event.is_pack_purchase is True

    def test_payload_with_both_products_rejected(self):
        with pytest.raises(ValueError):
            OrderPaidPayload(
                type="order.paid",
                provider=PaymentProvider.POLAR,
                provider_transaction_id="txn-1",
                profile_id="prof-1",
                pack_id="small",
                plan_id="pro",
            )

    def test_discriminated_request_to_event(self):
        request = PaymentEventRequest.model_validate(
            {
                "event": {
                    "type": "order.paid",
                    "provider": "paypal",
                    "provider_transaction_id": "txn-9",
                    "profile_id": "prof-1",
                    "plan_id": "pro",
                    "currency": "usd",
                }
            }
        )
        event = event_from_payload(request.event)
        assert isinstance(event, OrderPaid)
        assert event.plan_id == "pro"
        assert event.currency == "USD"
        assert event.is_pack_purchase is False

    def test_subscription_payloads_convert(self):
        event = event_from_payload(
            SubscriptionCanceledPayload(
                type="subscription.canceled", provider=PaymentProvider.POLAR, subscription_id="sub-1"
            )
        )
        assert event == SubscriptionCanceled(provider=PaymentProvider.POLAR, subscription_id="sub-1")
        assert SubscriptionRevoked.kind is PaymentEventKind.SUBSCRIPTION_REVOKED

    def test_events_are_immutable(self):
        event = SubscriptionCanceled(provider=PaymentProvider.POLAR, subscription_id="sub-1")
        with pytest.raises(AttributeError):
            event.subscription_id = "other"  # type: ignore[misc]
