"""
Tests for the Invoice Aggregator and calculate_invoice.

Covers:
- Totals are plain sums of already-rounded lines
- Grand total equals the sum of line totals exactly
- Empty and mixed-currency input
"""

from decimal import Decimal

import pytest

from billing_engines.aggregation import InvoiceAggregator, calculate_invoice
from billing_engines.line_items import LineItem, LineResult
from billing_kernel.exceptions import InvalidCurrencyError, ValidationError


def _items() -> list[LineItem]:
    return [
        LineItem(
            product_id="P-001",
            quantity=Decimal("3"),
            unit_price=Decimal("10.00"),
            discount_percent=Decimal("10"),
            tax_rate=Decimal("16"),
        ),
        LineItem(product_id="P-100", quantity=Decimal("1"), unit_price=Decimal("100.00")),
    ]


def _result(total: str, currency: str = "USD") -> LineResult:
    amount = Decimal(total)
    return LineResult(
        line_gross=amount,
        line_discount=Decimal("0"),
        line_taxable=amount,
        line_tax=Decimal("0"),
        line_total=amount,
        currency=currency,
    )


class TestCalculateInvoice:
    def test_totals(self):
        calc = calculate_invoice(items=_items(), currency="USD")

        assert calc.totals.subtotal == Decimal("130.00")
        assert calc.totals.discount_total == Decimal("3.00")
        assert calc.totals.tax_total == Decimal("4.32")
        assert calc.totals.grand_total == Decimal("131.32")
        assert calc.totals.line_count == 2
        assert calc.totals.currency == "USD"

    def test_grand_total_is_sum_of_lines(self):
        items = [
            LineItem(
                product_id=f"P-{i}",
                quantity=Decimal("3"),
                unit_price=Decimal("0.335"),
                discount_percent=Decimal("7.5"),
                tax_rate=Decimal("16"),
            )
            for i in range(7)
        ]

        calc = calculate_invoice(items=items, currency="USD")

        assert calc.totals.grand_total == sum(
            (line.line_total for line in calc.lines), Decimal("0")
        )

    def test_lines_keep_input_order(self):
        calc = calculate_invoice(items=_items(), currency="USD")
        assert [line.line_total for line in calc.lines] == [Decimal("31.32"), Decimal("100.00")]

    def test_empty_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            calculate_invoice(items=[], currency="USD")
        assert exc_info.value.field == "items"

    def test_unknown_currency(self):
        with pytest.raises(InvalidCurrencyError):
            calculate_invoice(items=_items(), currency="ABC")

    def test_deterministic(self):
        first = calculate_invoice(items=_items(), currency="VES")
        second = calculate_invoice(items=_items(), currency="VES")
        assert first == second


class TestInvoiceAggregator:
    def test_aggregate(self):
        totals = InvoiceAggregator().aggregate([_result("1.10"), _result("2.20")])
        assert totals.grand_total == Decimal("3.30")
        assert totals.line_count == 2

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            InvoiceAggregator().aggregate([])

    def test_mixed_currencies_rejected(self):
        with pytest.raises(ValidationError, match="mix currencies"):
            InvoiceAggregator().aggregate([_result("1.00", "USD"), _result("1.00", "VES")])
