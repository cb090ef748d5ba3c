"""
Invoice Aggregator - invoice totals from already-rounded line results.

    subtotal       = sum(line_gross)
    discount_total = sum(line_discount)
    tax_total      = sum(line_tax)
    grand_total    = subtotal - discount_total + tax_total

Aggregates are never re-rounded: every input is already on the currency's
minor unit, so ``grand_total`` equals the sum of line totals exactly.

``calculate_invoice`` is the live-preview entry point: it runs the line
calculator over a list of items and aggregates the results in one pure call,
so a form can recompute on every change without touching storage.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from billing_engines.line_items import LineItem, LineItemCalculator, LineResult
from billing_engines.tracer import traced_engine
from billing_kernel.domain.values import Currency
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.aggregation")


@dataclass(frozen=True)
class InvoiceTotals:
    """Invoice-level sums; all non-negative."""

    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    grand_total: Decimal
    currency: str
    line_count: int


@dataclass(frozen=True)
class InvoiceCalculation:
    """Line results in input order together with their totals."""

    lines: tuple[LineResult, ...]
    totals: InvoiceTotals


class InvoiceAggregator:
    """Sum line results into InvoiceTotals.  Deterministic and side-effect free."""

    def aggregate(self, results: Sequence[LineResult]) -> InvoiceTotals:
        """
        Aggregate ``results`` into totals.

        Raises:
            ValidationError: If ``results`` is empty or mixes currencies.
        """
        if not results:
            raise ValidationError("An invoice requires at least one line item", field="items")

        currencies = {r.currency for r in results}
        if len(currencies) != 1:
            raise ValidationError(
                f"Line results mix currencies: {sorted(currencies)}", field="items"
            )

        subtotal = sum((r.line_gross for r in results), Decimal("0"))
        discount_total = sum((r.line_discount for r in results), Decimal("0"))
        tax_total = sum((r.line_tax for r in results), Decimal("0"))
        grand_total = subtotal - discount_total + tax_total

        return InvoiceTotals(
            subtotal=subtotal,
            discount_total=discount_total,
            tax_total=tax_total,
            grand_total=grand_total,
            currency=currencies.pop(),
            line_count=len(results),
        )


@traced_engine("invoice_calculation", "1.0", fingerprint_fields=("items", "currency"))
def calculate_invoice(
    *,
    items: Sequence[LineItem],
    currency: str | Currency,
) -> InvoiceCalculation:
    """
    Compute every line and the invoice totals for ``items``.

    Raises:
        ValidationError: If ``items`` is empty.
        InvalidCurrencyError: If ``currency`` is not a known ISO 4217 code.
    """
    t0 = time.monotonic()
    ccy = currency if isinstance(currency, Currency) else Currency(currency)
    logger.debug(
        "invoice_calculation_started",
        extra={"line_count": len(items), "currency": ccy.code},
    )

    if not items:
        raise ValidationError("An invoice requires at least one line item", field="items")

    calculator = LineItemCalculator()
    lines = tuple(calculator.calculate(item, ccy) for item in items)
    totals = InvoiceAggregator().aggregate(lines)

    logger.info(
        "invoice_calculation_completed",
        extra={
            "line_count": totals.line_count,
            "subtotal": str(totals.subtotal),
            "discount_total": str(totals.discount_total),
            "tax_total": str(totals.tax_total),
            "grand_total": str(totals.grand_total),
            "currency": totals.currency,
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        },
    )
    return InvoiceCalculation(lines=lines, totals=totals)
