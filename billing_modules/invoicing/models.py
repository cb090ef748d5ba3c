"""
Invoicing Domain Models (``billing_modules.invoicing.models``).

Responsibility
--------------
Frozen dataclass value objects for invoices, their lines, payments, bank
accounts, stock adjustments and lifecycle audit entries.  These are what
``InvoicingService`` returns; ORM rows never leave the service.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* All monetary fields use ``Decimal`` -- NEVER ``float``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""
    DRAFT = "draft"
    ISSUED = "issued"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """How a payment was received."""
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"
    MOBILE = "mobile"
    CHECK = "check"


class InvoiceAction(str, Enum):
    """Actions the status workflow knows about."""
    UPDATE = "update"
    ISSUE = "issue"
    APPLY_PAYMENT = "apply_payment"
    REMOVE_PAYMENT = "remove_payment"
    CANCEL = "cancel"
    DELETE = "delete"


@dataclass(frozen=True)
class ClientRef:
    """Client snapshot taken when the invoice is drafted."""
    id: str
    name: str
    code: str | None = None
    tax_id: str | None = None
    address: str | None = None


@dataclass(frozen=True)
class InvoiceLine:
    """A persisted line: the entered item plus its rounded amounts."""
    id: UUID
    line_number: int
    product_id: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    tax_rate: Decimal
    line_gross: Decimal
    line_discount: Decimal
    line_taxable: Decimal
    line_tax: Decimal
    line_total: Decimal
    variant_id: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class Invoice:
    """An invoice with its lines and stored totals."""
    id: UUID
    scope: str
    status: InvoiceStatus
    client: ClientRef
    currency: str
    exchange_rate: Decimal
    issue_date: date
    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    grand_total: Decimal
    paid_amount: Decimal
    number: str | None = None
    due_date: date | None = None
    payment_terms_days: int | None = None
    payment_terms: str | None = None
    notes: str | None = None
    issued_at: datetime | None = None
    cancelled_at: datetime | None = None
    lines: tuple[InvoiceLine, ...] = field(default_factory=tuple)

    @property
    def pending_balance(self) -> Decimal:
        return self.grand_total - self.paid_amount


@dataclass(frozen=True)
class Payment:
    """A payment applied to an invoice."""
    id: UUID
    invoice_id: UUID
    amount: Decimal
    currency: str
    received_amount: Decimal
    settlement_currency: str
    exchange_rate: Decimal
    method: PaymentMethod
    payment_date: date
    reference: str | None = None
    bank_account_id: UUID | None = None
    notes: str | None = None


@dataclass(frozen=True)
class BankAccount:
    """A company bank account payments may be deposited into."""
    id: UUID
    bank_name: str
    account_number: str
    currency: str
    account_type: str = "checking"
    is_default: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class StockAdjustment:
    """A stock change requested from the inventory collaborator."""
    product_id: str
    quantity: Decimal
    reference: str
    variant_id: str | None = None


@dataclass(frozen=True)
class InvoiceAuditEntry:
    """One lifecycle action recorded against an invoice."""
    id: UUID
    invoice_id: UUID
    entry_number: int
    action: InvoiceAction
    from_status: InvoiceStatus | None
    to_status: InvoiceStatus | None
    actor_id: UUID
    reason: str | None = None
    detail: dict = field(default_factory=dict)
