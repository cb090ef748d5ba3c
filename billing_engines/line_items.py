"""
Line Item Calculator - per-line monetary amounts for an invoice.

Pure functions with no I/O.  Each line is rounded once, at the line
boundary, so a printed line always reconciles with itself and the invoice
grand total is the exact sum of line totals.

    line_gross    = quantity * unit_price                     (rounded)
    line_discount = line_gross * discount_percent / 100       (rounded)
    line_taxable  = line_gross - line_discount
    line_tax      = line_taxable * tax_rate / 100             (rounded)
    line_total    = line_taxable + line_tax

Rounding is ROUND_HALF_UP to the invoice currency's ISO 4217 minor unit.

Usage:
    from billing_engines.line_items import LineItem, LineItemCalculator

    item = LineItem(
        product_id="P-1",
        quantity=Decimal("3"),
        unit_price=Decimal("10.00"),
        discount_percent=Decimal("10"),
        tax_rate=Decimal("16"),
    )
    result = LineItemCalculator().calculate(item, "USD")
    print(result.line_total)  # 31.32
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from billing_kernel.domain.values import Currency, to_decimal
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.line_items")

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class LineItem:
    """
    One product/quantity/price entry on an invoice.

    Validated on construction: quantity must be positive, price and tax rate
    non-negative, discount between 0 and 100 percent.  Zero-quantity lines
    are rejected rather than silently zeroed.
    """

    product_id: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    description: str = ""
    variant_id: str | None = None
    code: str | None = None

    def __post_init__(self) -> None:
        for name in ("quantity", "unit_price", "discount_percent", "tax_rate"):
            try:
                object.__setattr__(self, name, to_decimal(getattr(self, name), name))
            except (TypeError, ValueError) as exc:
                raise ValidationError(str(exc), field=name) from exc

        if not self.product_id:
            raise ValidationError("Line item requires a product_id", field="product_id")
        if not self.quantity.is_finite() or self.quantity <= 0:
            raise ValidationError(
                f"Line quantity must be greater than zero, got {self.quantity}",
                field="quantity",
            )
        if not self.unit_price.is_finite() or self.unit_price < 0:
            raise ValidationError(
                f"Unit price cannot be negative, got {self.unit_price}",
                field="unit_price",
            )
        if (
            not self.discount_percent.is_finite()
            or self.discount_percent < 0
            or self.discount_percent > _HUNDRED
        ):
            raise ValidationError(
                f"Discount percent must be between 0 and 100, got {self.discount_percent}",
                field="discount_percent",
            )
        if not self.tax_rate.is_finite() or self.tax_rate < 0:
            raise ValidationError(
                f"Tax rate cannot be negative, got {self.tax_rate}",
                field="tax_rate",
            )


@dataclass(frozen=True)
class LineResult:
    """Rounded amounts for one line.  Derived, never edited directly."""

    line_gross: Decimal
    line_discount: Decimal
    line_taxable: Decimal
    line_tax: Decimal
    line_total: Decimal
    currency: str


class LineItemCalculator:
    """
    Calculate the amounts of a single invoice line.

    Pure - no I/O, no clock, no database access.
    """

    def calculate(self, item: LineItem, currency: str | Currency) -> LineResult:
        """
        Compute the LineResult for ``item`` in ``currency``.

        Raises:
            InvalidCurrencyError: If the currency is not a known ISO 4217 code.
        """
        ccy = currency if isinstance(currency, Currency) else Currency(currency)

        gross = ccy.quantize(item.quantity * item.unit_price)
        discount = ccy.quantize(gross * item.discount_percent / _HUNDRED)
        taxable = gross - discount
        tax = ccy.quantize(taxable * item.tax_rate / _HUNDRED)
        total = taxable + tax

        logger.debug(
            "line_calculated",
            extra={
                "product_id": item.product_id,
                "quantity": str(item.quantity),
                "unit_price": str(item.unit_price),
                "line_gross": str(gross),
                "line_discount": str(discount),
                "line_tax": str(tax),
                "line_total": str(total),
                "currency": ccy.code,
            },
        )

        return LineResult(
            line_gross=gross,
            line_discount=discount,
            line_taxable=taxable,
            line_tax=tax,
            line_total=total,
            currency=ccy.code,
        )
