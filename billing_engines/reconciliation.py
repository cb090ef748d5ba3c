"""
Payment Reconciler - validate a payment against an invoice balance.

Pure functions with no I/O.  Given a snapshot of the invoice balance and a
payment request, the reconciler decides whether the payment may be applied
and what the invoice's paid amount becomes.  Status derivation from the
result belongs to the invoicing workflow.

Validation order (the first failure wins):

    1. amount > 0                                   InvalidAmountError
    2. amount <= pending balance + epsilon          OverpaymentRejectedError
    3. settlement amount consistent with the rate   CurrencyMismatchError

``epsilon`` is the invoice currency's minor unit times a configured fraction
(0.01 by default), so for a two-decimal currency a payment may exceed the
pending balance by at most 0.0001.

Conversion uses the invoice's exchange rate, quoted as units of the base
(local) currency per one unit of invoice currency:

    settlement == base      expected = amount * rate
    invoice    == base      expected = amount / rate
    otherwise               no rate bridges the pair -> CurrencyMismatchError

A received amount is accepted when it is within
``max(one settlement minor unit, expected * relative_tolerance)`` of the
expected amount.

Usage:
    reconciler = PaymentReconciler(base_currency="VES")
    result = reconciler.reconcile(
        snapshot=BalanceSnapshot(
            currency="USD", grand_total=Decimal("100.00"),
            paid_amount=Decimal("40.00"), exchange_rate=Decimal("36.50"),
        ),
        request=PaymentRequest(amount=Decimal("60.00"), currency="USD"),
    )
    result.new_paid_amount  # Decimal('100.00')
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal

from billing_engines.tracer import traced_engine
from billing_kernel.domain.values import Currency, ExchangeRate, Money, to_decimal
from billing_kernel.exceptions import (
    CurrencyMismatchError,
    InvalidAmountError,
    OverpaymentRejectedError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.reconciliation")

DEFAULT_EPSILON_FRACTION = Decimal("0.01")
DEFAULT_RELATIVE_TOLERANCE = Decimal("0.005")


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance-relevant fields of an invoice, read under its row lock."""

    currency: str
    grand_total: Decimal
    paid_amount: Decimal
    exchange_rate: Decimal
    invoice_id: str | None = None

    @property
    def pending_balance(self) -> Decimal:
        return self.grand_total - self.paid_amount


@dataclass(frozen=True)
class PaymentRequest:
    """
    A payment as entered by the caller.

    ``currency`` is the settlement currency, the one actually received.
    At least one of ``amount`` (invoice currency) and ``received_amount``
    (settlement currency) must be given.
    """

    currency: str
    amount: Decimal | None = None
    received_amount: Decimal | None = None
    bank_account_currency: str | None = None


@dataclass(frozen=True)
class ReconciliationResult:
    """An accepted payment and the invoice balance after applying it."""

    amount: Decimal
    invoice_currency: str
    received_amount: Decimal
    settlement_currency: str
    exchange_rate: Decimal
    new_paid_amount: Decimal
    pending_balance: Decimal


@dataclass(frozen=True)
class ReversalResult:
    """Invoice balance after removing a previously applied payment."""

    amount: Decimal
    new_paid_amount: Decimal
    pending_balance: Decimal


class PaymentReconciler:
    """
    Apply and reverse payments against an invoice balance.

    Pure - no I/O.  Thresholds are supplied at construction, normally from
    BillingSettings.
    """

    def __init__(
        self,
        base_currency: str = "VES",
        epsilon_fraction: Decimal = DEFAULT_EPSILON_FRACTION,
        relative_tolerance: Decimal = DEFAULT_RELATIVE_TOLERANCE,
    ):
        self._base = Currency(base_currency)
        self._epsilon_fraction = to_decimal(epsilon_fraction, "epsilon_fraction")
        self._relative_tolerance = to_decimal(relative_tolerance, "relative_tolerance")
        if self._epsilon_fraction < 0 or self._relative_tolerance < 0:
            raise ValueError("Reconciliation tolerances cannot be negative")

    @property
    def base_currency(self) -> str:
        return self._base.code

    def epsilon(self, currency: str | Currency) -> Decimal:
        """Overpayment/paid-status slack for ``currency``."""
        ccy = currency if isinstance(currency, Currency) else Currency(currency)
        return ccy.minor_unit * self._epsilon_fraction

    def conversion_tolerance(self, expected: Decimal, settlement: Currency) -> Decimal:
        return max(settlement.minor_unit, abs(expected) * self._relative_tolerance)

    @traced_engine("payment_reconciliation", "1.0", fingerprint_fields=("snapshot", "request"))
    def reconcile(
        self,
        *,
        snapshot: BalanceSnapshot,
        request: PaymentRequest,
    ) -> ReconciliationResult:
        """
        Validate ``request`` against ``snapshot`` and compute the new balance.

        Raises:
            InvalidAmountError: Amount (or received amount) is missing or not positive.
            OverpaymentRejectedError: Amount exceeds the pending balance plus epsilon.
            CurrencyMismatchError: Settlement data is inconsistent with the
                invoice currency, its exchange rate, or the bank account.
        """
        t0 = time.monotonic()
        invoice_ccy = Currency(snapshot.currency)
        settlement_ccy = Currency(request.currency)
        rate = ExchangeRate.of(invoice_ccy, self._base, snapshot.exchange_rate)

        logger.info(
            "payment_reconciliation_started",
            extra={
                "invoice_id": snapshot.invoice_id,
                "amount": None if request.amount is None else str(request.amount),
                "received_amount": None if request.received_amount is None else str(request.received_amount),
                "invoice_currency": invoice_ccy.code,
                "settlement_currency": settlement_ccy.code,
                "pending_balance": str(snapshot.pending_balance),
            },
        )

        received_in = (
            None if request.received_amount is None
            else to_decimal(request.received_amount, "received_amount")
        )
        if received_in is not None and received_in <= 0:
            raise InvalidAmountError(received_in)

        if request.amount is not None:
            amount = to_decimal(request.amount)
        elif received_in is not None:
            amount = self._derive_amount(received_in, settlement_ccy, invoice_ccy, rate)
        else:
            raise InvalidAmountError(None)

        # 1. positive
        if amount <= 0:
            logger.warning(
                "payment_rejected_invalid_amount",
                extra={"invoice_id": snapshot.invoice_id, "amount": str(amount)},
            )
            raise InvalidAmountError(amount)

        # 2. overpayment
        pending = snapshot.pending_balance
        eps = self.epsilon(invoice_ccy)
        if amount > pending + eps:
            logger.warning(
                "payment_rejected_overpayment",
                extra={
                    "invoice_id": snapshot.invoice_id,
                    "amount": str(amount),
                    "pending_balance": str(pending),
                    "epsilon": str(eps),
                    "currency": invoice_ccy.code,
                },
            )
            raise OverpaymentRejectedError(amount, pending, invoice_ccy.code)

        # 3. settlement consistency
        received = self._check_settlement(
            amount, received_in, invoice_ccy, settlement_ccy, rate,
        )
        if (
            request.bank_account_currency is not None
            and Currency(request.bank_account_currency) != settlement_ccy
        ):
            logger.warning(
                "payment_rejected_bank_account_currency",
                extra={
                    "invoice_id": snapshot.invoice_id,
                    "bank_account_currency": request.bank_account_currency,
                    "settlement_currency": settlement_ccy.code,
                },
            )
            raise CurrencyMismatchError(
                invoice_ccy.code,
                settlement_ccy.code,
                f"Bank account holds {request.bank_account_currency} but the payment "
                f"was settled in {settlement_ccy.code}",
            )

        new_paid = snapshot.paid_amount + amount
        result = ReconciliationResult(
            amount=amount,
            invoice_currency=invoice_ccy.code,
            received_amount=received,
            settlement_currency=settlement_ccy.code,
            exchange_rate=rate.rate,
            new_paid_amount=new_paid,
            pending_balance=snapshot.grand_total - new_paid,
        )

        logger.info(
            "payment_reconciliation_completed",
            extra={
                "invoice_id": snapshot.invoice_id,
                "amount": str(result.amount),
                "received_amount": str(result.received_amount),
                "new_paid_amount": str(result.new_paid_amount),
                "pending_balance": str(result.pending_balance),
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        return result

    def reverse(self, *, snapshot: BalanceSnapshot, amount: Decimal) -> ReversalResult:
        """
        Remove a previously applied ``amount`` from the balance.

        Exact inverse of ``reconcile``: the paid amount drops by exactly
        ``amount``.

        Raises:
            InvalidAmountError: If ``amount`` is not positive.
            ValidationError: If ``amount`` exceeds what was paid.
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidAmountError(amount)

        new_paid = snapshot.paid_amount - amount
        if new_paid < 0:
            raise ValidationError(
                f"Cannot remove payment of {amount} {snapshot.currency}: only "
                f"{snapshot.paid_amount} {snapshot.currency} is paid",
                field="amount",
            )

        logger.info(
            "payment_reversed",
            extra={
                "invoice_id": snapshot.invoice_id,
                "amount": str(amount),
                "new_paid_amount": str(new_paid),
            },
        )
        return ReversalResult(
            amount=amount,
            new_paid_amount=new_paid,
            pending_balance=snapshot.grand_total - new_paid,
        )

    # ------------------------------------------------------------------

    def _require_bridge(
        self,
        invoice_ccy: Currency,
        settlement_ccy: Currency,
        rate: ExchangeRate,
    ) -> None:
        if not rate.bridges(invoice_ccy, settlement_ccy):
            logger.warning(
                "payment_rejected_unbridged_currency",
                extra={
                    "invoice_currency": invoice_ccy.code,
                    "settlement_currency": settlement_ccy.code,
                    "base_currency": self._base.code,
                },
            )
            raise CurrencyMismatchError(
                invoice_ccy.code,
                settlement_ccy.code,
                f"No exchange rate converts {invoice_ccy.code} invoices into "
                f"{settlement_ccy.code}; the invoice rate is quoted in {self._base.code}",
            )

    def _derive_amount(
        self,
        received: Decimal,
        settlement_ccy: Currency,
        invoice_ccy: Currency,
        rate: ExchangeRate,
    ) -> Decimal:
        """Invoice-currency amount equivalent to ``received``, rounded."""
        if settlement_ccy == invoice_ccy:
            return received
        self._require_bridge(invoice_ccy, settlement_ccy, rate)
        return rate.convert(Money(received, settlement_ccy), invoice_ccy).round().amount

    def _check_settlement(
        self,
        amount: Decimal,
        received: Decimal | None,
        invoice_ccy: Currency,
        settlement_ccy: Currency,
        rate: ExchangeRate,
    ) -> Decimal:
        """Return the settlement-currency amount or raise CurrencyMismatchError."""
        if settlement_ccy == invoice_ccy:
            if received is None:
                return amount
            if abs(received - amount) > settlement_ccy.minor_unit:
                raise CurrencyMismatchError(
                    invoice_ccy.code,
                    settlement_ccy.code,
                    f"Received amount {received} {settlement_ccy.code} does not match "
                    f"payment amount {amount} {invoice_ccy.code}",
                    expected_amount=amount,
                    received_amount=received,
                )
            return received

        self._require_bridge(invoice_ccy, settlement_ccy, rate)
        if received is None:
            raise CurrencyMismatchError(
                invoice_ccy.code,
                settlement_ccy.code,
                f"Payment settled in {settlement_ccy.code} against a {invoice_ccy.code} "
                f"invoice requires the received amount",
            )

        expected = rate.convert(Money(amount, invoice_ccy), settlement_ccy).amount
        tolerance = self.conversion_tolerance(expected, settlement_ccy)
        if abs(received - expected) > tolerance:
            expected_rounded = settlement_ccy.quantize(expected)
            logger.warning(
                "payment_rejected_currency_mismatch",
                extra={
                    "amount": str(amount),
                    "received_amount": str(received),
                    "expected_amount": str(expected_rounded),
                    "tolerance": str(tolerance),
                    "exchange_rate": str(rate.rate),
                },
            )
            raise CurrencyMismatchError(
                invoice_ccy.code,
                settlement_ccy.code,
                f"Received {received} {settlement_ccy.code} but {amount} "
                f"{invoice_ccy.code} at rate {rate.rate} is {expected_rounded} "
                f"{settlement_ccy.code}",
                expected_amount=expected_rounded,
                received_amount=received,
            )
        return received
