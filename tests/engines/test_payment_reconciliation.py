"""
Tests for the Payment Reconciler.

Covers:
- Overpayment rejection with the epsilon allowance
- Amount validation
- Settlement in the base currency through the invoice exchange rate
- Received-only payments (amount derived from the settlement side)
- Bank account currency consistency
- Reversal as the exact inverse of application
"""

from decimal import Decimal

import pytest

from billing_engines.reconciliation import (
    BalanceSnapshot,
    PaymentReconciler,
    PaymentRequest,
)
from billing_kernel.exceptions import (
    CurrencyMismatchError,
    InvalidAmountError,
    OverpaymentRejectedError,
    ValidationError,
)


def _snapshot(paid="40.00", total="100.00", currency="USD", rate="36.50") -> BalanceSnapshot:
    return BalanceSnapshot(
        currency=currency,
        grand_total=Decimal(total),
        paid_amount=Decimal(paid),
        exchange_rate=Decimal(rate),
        invoice_id="inv-1",
    )


class TestOverpayment:
    def setup_method(self):
        self.reconciler = PaymentReconciler(base_currency="VES")

    def test_exact_balance_settles(self):
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(currency="USD", amount=Decimal("60.00")),
        )

        assert result.new_paid_amount == Decimal("100.00")
        assert result.pending_balance == Decimal("0.00")
        assert result.received_amount == Decimal("60.00")
        assert result.settlement_currency == "USD"

    def test_one_cent_over_rejected(self):
        with pytest.raises(OverpaymentRejectedError) as exc_info:
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="USD", amount=Decimal("60.01")),
            )

        assert exc_info.value.pending_balance == Decimal("60.00")
        assert exc_info.value.amount == Decimal("60.01")
        assert exc_info.value.currency == "USD"

    def test_within_epsilon_accepted(self):
        """Two-decimal currency: epsilon is 0.01 * 0.01 = 0.0001."""
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(currency="USD", amount=Decimal("60.0001")),
        )
        assert result.new_paid_amount == Decimal("100.0001")

    def test_beyond_epsilon_rejected(self):
        with pytest.raises(OverpaymentRejectedError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="USD", amount=Decimal("60.0002")),
            )

    def test_fully_paid_invoice_rejects_any_amount(self):
        with pytest.raises(OverpaymentRejectedError):
            self.reconciler.reconcile(
                snapshot=_snapshot(paid="100.00"),
                request=PaymentRequest(currency="USD", amount=Decimal("0.01")),
            )

    def test_epsilon_scales_with_currency(self):
        assert self.reconciler.epsilon("USD") == Decimal("0.0001")
        assert self.reconciler.epsilon("JPY") == Decimal("0.01")

    def test_rejection_is_logged(self, captured_logs):
        with pytest.raises(OverpaymentRejectedError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="USD", amount=Decimal("75.00")),
            )

        rejected = [r for r in captured_logs() if r["message"] == "payment_rejected_overpayment"]
        assert len(rejected) == 1
        assert rejected[0]["pending_balance"] == "60.00"
        assert rejected[0]["amount"] == "75.00"


class TestAmountValidation:
    def setup_method(self):
        self.reconciler = PaymentReconciler(base_currency="VES")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    def test_non_positive_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="USD", amount=amount),
            )

    def test_no_amount_at_all(self):
        with pytest.raises(InvalidAmountError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="USD"),
            )

    def test_negative_received_amount(self):
        with pytest.raises(InvalidAmountError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(
                    currency="VES", amount=Decimal("10.00"), received_amount=Decimal("-365.00"),
                ),
            )

    def test_invalid_amount_checked_before_overpayment(self):
        with pytest.raises(InvalidAmountError):
            self.reconciler.reconcile(
                snapshot=_snapshot(paid="100.00"),
                request=PaymentRequest(currency="USD", amount=Decimal("-1")),
            )

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            PaymentReconciler(epsilon_fraction=Decimal("-0.01"))


class TestSettlementCurrency:
    """USD invoice at 36.50 VES/USD, settled in VES."""

    def setup_method(self):
        self.reconciler = PaymentReconciler(base_currency="VES")

    def test_exact_conversion(self):
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(
                currency="VES", amount=Decimal("10.00"), received_amount=Decimal("365.00"),
            ),
        )

        assert result.amount == Decimal("10.00")
        assert result.invoice_currency == "USD"
        assert result.received_amount == Decimal("365.00")
        assert result.settlement_currency == "VES"
        assert result.exchange_rate == Decimal("36.50")
        assert result.new_paid_amount == Decimal("50.00")

    def test_within_relative_tolerance(self):
        """Tolerance is max(0.01, 365.00 * 0.005) = 1.825 VES."""
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(
                currency="VES", amount=Decimal("10.00"), received_amount=Decimal("366.80"),
            ),
        )
        assert result.received_amount == Decimal("366.80")

    def test_mismatch_rejected(self):
        with pytest.raises(CurrencyMismatchError) as exc_info:
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(
                    currency="VES", amount=Decimal("10.00"), received_amount=Decimal("360.00"),
                ),
            )

        assert exc_info.value.expected_amount == Decimal("365.00")
        assert exc_info.value.received_amount == Decimal("360.00")
        assert exc_info.value.invoice_currency == "USD"
        assert exc_info.value.settlement_currency == "VES"

    def test_foreign_settlement_needs_received_amount(self):
        with pytest.raises(CurrencyMismatchError, match="requires the received amount"):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="VES", amount=Decimal("10.00")),
            )

    def test_unbridged_currency_rejected(self):
        with pytest.raises(CurrencyMismatchError, match="No exchange rate"):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(
                    currency="EUR", amount=Decimal("10.00"), received_amount=Decimal("9.20"),
                ),
            )

    def test_same_currency_received_must_match(self):
        with pytest.raises(CurrencyMismatchError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(
                    currency="USD", amount=Decimal("10.00"), received_amount=Decimal("10.02"),
                ),
            )

    def test_same_currency_one_minor_unit_tolerated(self):
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(
                currency="USD", amount=Decimal("10.00"), received_amount=Decimal("10.01"),
            ),
        )
        assert result.received_amount == Decimal("10.01")
        assert result.new_paid_amount == Decimal("50.00")

    def test_overpayment_checked_before_conversion(self):
        with pytest.raises(OverpaymentRejectedError):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(
                    currency="VES", amount=Decimal("70.00"), received_amount=Decimal("1.00"),
                ),
            )


class TestReceivedOnly:
    def setup_method(self):
        self.reconciler = PaymentReconciler(base_currency="VES")

    def test_amount_derived_from_received(self):
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(currency="VES", received_amount=Decimal("365.00")),
        )

        assert result.amount == Decimal("10.00")
        assert result.new_paid_amount == Decimal("50.00")

    def test_derived_amount_is_rounded(self):
        """100.00 VES / 36.50 = 2.7397... -> 2.74 USD."""
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(currency="VES", received_amount=Decimal("100.00")),
        )
        assert result.amount == Decimal("2.74")

    def test_derived_overpayment_rejected(self):
        """2200.00 VES is 60.27 USD against 60.00 pending."""
        with pytest.raises(OverpaymentRejectedError) as exc_info:
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(currency="VES", received_amount=Decimal("2200.00")),
            )
        assert exc_info.value.amount == Decimal("60.27")

    def test_same_currency_received_only(self):
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(currency="USD", received_amount=Decimal("15.00")),
        )
        assert result.amount == Decimal("15.00")


class TestBankAccountCurrency:
    def setup_method(self):
        self.reconciler = PaymentReconciler(base_currency="VES")

    def test_matching_account_accepted(self):
        result = self.reconciler.reconcile(
            snapshot=_snapshot(),
            request=PaymentRequest(
                currency="VES",
                amount=Decimal("10.00"),
                received_amount=Decimal("365.00"),
                bank_account_currency="VES",
            ),
        )
        assert result.settlement_currency == "VES"

    def test_mismatched_account_rejected(self):
        with pytest.raises(CurrencyMismatchError, match="Bank account holds VES"):
            self.reconciler.reconcile(
                snapshot=_snapshot(),
                request=PaymentRequest(
                    currency="USD", amount=Decimal("10.00"), bank_account_currency="VES",
                ),
            )


class TestReverse:
    def setup_method(self):
        self.reconciler = PaymentReconciler(base_currency="VES")

    def test_inverse_of_apply(self):
        snapshot = _snapshot()
        applied = self.reconciler.reconcile(
            snapshot=snapshot,
            request=PaymentRequest(currency="USD", amount=Decimal("25.55")),
        )
        after = _snapshot(paid=str(applied.new_paid_amount))

        reversed_ = self.reconciler.reverse(snapshot=after, amount=Decimal("25.55"))

        assert reversed_.new_paid_amount == snapshot.paid_amount
        assert reversed_.pending_balance == snapshot.pending_balance

    def test_cannot_remove_more_than_paid(self):
        with pytest.raises(ValidationError):
            self.reconciler.reverse(snapshot=_snapshot(), amount=Decimal("40.01"))

    def test_non_positive_rejected(self):
        with pytest.raises(InvalidAmountError):
            self.reconciler.reverse(snapshot=_snapshot(), amount=Decimal("0"))
