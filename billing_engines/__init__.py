"""
Module: billing_engines
Responsibility:
    Re-exports the pure calculation engines used by the invoicing module.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  May import billing_kernel
    (domain values, exceptions, logging).  MUST NOT import billing_modules.

Invariants enforced:
    - Engines never read the clock; times are passed in by callers.
    - Decimal-only arithmetic, ROUND_HALF_UP at the currency minor unit.
    - Identical inputs always produce identical outputs.

Usage:
    from billing_engines import LineItem, calculate_invoice
    from billing_engines import NumberingEngine, compile_pattern
    from billing_engines import PaymentReconciler, BalanceSnapshot, PaymentRequest
"""

from billing_engines.aggregation import (
    InvoiceAggregator,
    InvoiceCalculation,
    InvoiceTotals,
    calculate_invoice,
)
from billing_engines.line_items import LineItem, LineItemCalculator, LineResult
from billing_engines.numbering import (
    DEFAULT_PATTERN,
    NumberingEngine,
    NumberPattern,
    TokenKind,
    client_identifier,
    compile_pattern,
    require_unique_pattern,
)
from billing_engines.reconciliation import (
    BalanceSnapshot,
    PaymentReconciler,
    PaymentRequest,
    ReconciliationResult,
    ReversalResult,
)
from billing_engines.terms import derive_due_date, terms_label

__all__ = [
    "BalanceSnapshot",
    "DEFAULT_PATTERN",
    "InvoiceAggregator",
    "InvoiceCalculation",
    "InvoiceTotals",
    "LineItem",
    "LineItemCalculator",
    "LineResult",
    "NumberPattern",
    "NumberingEngine",
    "PaymentReconciler",
    "PaymentRequest",
    "ReconciliationResult",
    "ReversalResult",
    "TokenKind",
    "calculate_invoice",
    "client_identifier",
    "compile_pattern",
    "derive_due_date",
    "require_unique_pattern",
    "terms_label",
]
