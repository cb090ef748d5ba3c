"""
Invoicing Module (``billing_modules.invoicing``).

Responsibility
--------------
Fiscal invoices from draft to paid or cancelled: totals, sequential
numbering, stock side effects and partial or multi-currency payments.

Architecture position
---------------------
**Modules layer** -- domain DTOs, ORM models, the status workflow, the
inventory gateway protocol and ``InvoicingService``, which delegates all
computation to ``billing_engines`` and number allocation to the kernel.

Failure modes
-------------
* Typed ``BillingKernelError`` subclasses for every rejected command.
* Database exceptions are wrapped in ``PersistenceFailureError`` after
  rollback.
"""

from billing_modules.invoicing.inventory import InventoryGateway
from billing_modules.invoicing.models import (
    BankAccount,
    ClientRef,
    Invoice,
    InvoiceAction,
    InvoiceAuditEntry,
    InvoiceLine,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    StockAdjustment,
)
from billing_modules.invoicing.service import InvoicingService
from billing_modules.invoicing.workflows import (
    INVOICE_WORKFLOW,
    TransitionDecision,
    guard,
    resolve_payment_status,
)

__all__ = [
    "BankAccount",
    "ClientRef",
    "INVOICE_WORKFLOW",
    "InventoryGateway",
    "Invoice",
    "InvoiceAction",
    "InvoiceAuditEntry",
    "InvoiceLine",
    "InvoiceStatus",
    "InvoicingService",
    "Payment",
    "PaymentMethod",
    "StockAdjustment",
    "TransitionDecision",
    "guard",
    "resolve_payment_status",
]
