"""
Unit tests for the billing exception hierarchy.

Every error carries a machine-readable ``code`` and the structured
attributes callers branch on; messages name the failed invariant.
"""

from decimal import Decimal

import pytest

from billing_kernel.exceptions import (
    BankAccountNotFoundError,
    BillingKernelError,
    ConcurrencyError,
    CurrencyError,
    CurrencyMismatchError,
    InsufficientStockError,
    InvalidAmountError,
    InvalidCurrencyError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    NotFoundError,
    OverpaymentRejectedError,
    PaymentNotFoundError,
    PersistenceFailureError,
    SequenceConflictError,
    SequenceNotFoundError,
    ValidationError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_class, parent",
        [
            (InvalidAmountError, ValidationError),
            (InvalidCurrencyError, CurrencyError),
            (CurrencyMismatchError, CurrencyError),
            (SequenceConflictError, ConcurrencyError),
            (InvoiceNotFoundError, NotFoundError),
            (PaymentNotFoundError, NotFoundError),
            (BankAccountNotFoundError, NotFoundError),
            (SequenceNotFoundError, NotFoundError),
            (OverpaymentRejectedError, BillingKernelError),
            (InsufficientStockError, BillingKernelError),
            (PersistenceFailureError, BillingKernelError),
        ],
    )
    def test_parent(self, exc_class, parent):
        assert issubclass(exc_class, parent)

    def test_codes_are_unique(self):
        classes = [
            ValidationError, InvalidAmountError, InvalidTransitionError,
            OverpaymentRejectedError, InvalidCurrencyError, CurrencyMismatchError,
            InsufficientStockError, SequenceConflictError, PersistenceFailureError,
            InvoiceNotFoundError, PaymentNotFoundError, BankAccountNotFoundError,
            SequenceNotFoundError,
        ]
        codes = [c.code for c in classes]
        assert len(codes) == len(set(codes))


class TestMessages:
    def test_overpayment_names_pending_balance(self):
        exc = OverpaymentRejectedError(Decimal("60.01"), Decimal("60.00"), "USD")
        assert exc.code == "OVERPAYMENT_REJECTED"
        assert "60.01" in str(exc)
        assert "60.00 USD" in str(exc)

    def test_invalid_amount(self):
        exc = InvalidAmountError(Decimal("0"))
        assert exc.field == "amount"
        assert exc.amount == Decimal("0")

    def test_invalid_transition_with_reason(self):
        exc = InvalidTransitionError("cancelled", "apply_payment", "terminal")
        assert exc.status == "cancelled"
        assert exc.action == "apply_payment"
        assert "cancelled" in str(exc)
        assert "terminal" in str(exc)

    def test_insufficient_stock_variant(self):
        exc = InsufficientStockError("P-1", Decimal("5"), Decimal("2"), variant_id="V-9")
        assert "variant V-9" in str(exc)
        assert exc.requested == Decimal("5")
        assert exc.available == Decimal("2")

    def test_persistence_failure_wraps_cause(self):
        cause = RuntimeError("disk full")
        exc = PersistenceFailureError("invoice number allocation", cause=cause)
        assert exc.cause is cause
        assert "disk full" in str(exc)
        assert exc.operation == "invoice number allocation"

    def test_sequence_conflict(self):
        exc = SequenceConflictError("default", 7)
        assert exc.scope == "default"
        assert exc.observed_number == 7

    def test_currency_mismatch_amounts(self):
        exc = CurrencyMismatchError(
            "USD", "VES", "mismatch",
            expected_amount=Decimal("3650.00"), received_amount=Decimal("3000.00"),
        )
        assert exc.invoice_currency == "USD"
        assert exc.settlement_currency == "VES"
        assert exc.expected_amount == Decimal("3650.00")
