"""
Inventory gateway protocol.

Contract:
    InventoryGateway.decrement() removes stock for every adjustment or none;
    it raises InsufficientStockError when any line cannot be covered.
    InventoryGateway.restore() puts back stock previously decremented.

Architecture: billing_modules/invoicing.  The invoicing service decides when
stock changes; the gateway's implementation owns the quantities.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol, runtime_checkable

from billing_modules.invoicing.models import InvoiceLine, StockAdjustment


@runtime_checkable
class InventoryGateway(Protocol):
    """Protocol for the stock collaborator of the invoicing service."""

    def decrement(self, adjustments: Sequence[StockAdjustment]) -> None:
        """Remove stock for every adjustment. All-or-nothing."""
        ...

    def restore(self, adjustments: Sequence[StockAdjustment]) -> None:
        """Return stock removed by an earlier ``decrement``."""
        ...


def adjustments_for(
    lines: Sequence[InvoiceLine],
    reference: str,
) -> tuple[StockAdjustment, ...]:
    """
    One adjustment per product or variant, quantities summed across lines.

    Order follows the first appearance of each product/variant pair.
    """
    totals: dict[tuple[str, str | None], Decimal] = {}
    for line in lines:
        key = (line.product_id, line.variant_id)
        totals[key] = totals.get(key, Decimal("0")) + line.quantity
    return tuple(
        StockAdjustment(
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            reference=reference,
        )
        for (product_id, variant_id), quantity in totals.items()
    )
