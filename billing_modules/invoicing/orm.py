"""
Invoicing ORM Models (``billing_modules.invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence models for invoices, lines, payments, bank accounts
and the invoice audit trail.  ``to_dto`` maps rows to the frozen dataclasses
in ``models.py``.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db`` and
sibling ``models.py``.  MUST NOT be imported by ``billing_kernel``.

Invariants enforced
-------------------
* ``(scope, number)`` is unique; drafts carry a NULL number.
* Monetary columns are ExactDecimal(38, 9); rates are ExactDecimal(38, 12).
* Audit rows carry the invoice id without a foreign key so they outlive
  a deleted invoice.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import RATE_TYPE, TrackedBase
from billing_kernel.domain.values import Currency
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
)


def money_scale(value: Decimal, currency: str) -> Decimal:
    """
    Present a stored amount at the currency's scale.

    Amount columns come back at scale 9, e.g. ``100.000000000``; amounts that
    sit on the minor unit are re-quantized to it, anything finer is kept.
    """
    quantized = Currency(currency).quantize(value)
    return quantized if quantized == value else value.normalize()


def _plain(value: Decimal) -> Decimal:
    """Drop trailing zeros without switching to exponent notation."""
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return normalized.quantize(Decimal(1))
    return normalized


# ---------------------------------------------------------------------------
# 1. InvoiceModel
# ---------------------------------------------------------------------------


class InvoiceModel(TrackedBase):
    """
    ORM model for invoices.

    Client data is a snapshot taken at draft time.  Totals are stored as
    computed by the engines and rewritten only while the invoice is a draft.
    """

    __tablename__ = "billing_invoices"

    __table_args__ = (
        UniqueConstraint("scope", "number", name="uq_billing_invoices_scope_number"),
        Index("idx_billing_invoices_status", "status"),
        Index("idx_billing_invoices_client_id", "client_id"),
        Index("idx_billing_invoices_issue_date", "issue_date"),
    )

    scope: Mapped[str] = mapped_column(String(50), nullable=False)
    number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    client_id: Mapped[str] = mapped_column(String(100), nullable=False)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    client_tax_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    client_address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE_TYPE, nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_terms_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    discount_total: Mapped[Decimal] = mapped_column(nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    issued_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    lines: Mapped[list["InvoiceLineModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineModel.line_number",
        lazy="selectin",
    )

    payments: Mapped[list["PaymentModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def to_dto(self) -> Invoice:
        """Convert ORM model to frozen dataclass."""
        ccy = self.currency
        return Invoice(
            id=self.id,
            scope=self.scope,
            number=self.number,
            status=InvoiceStatus(self.status),
            client=ClientRef(
                id=self.client_id,
                name=self.client_name,
                code=self.client_code,
                tax_id=self.client_tax_id,
                address=self.client_address,
            ),
            currency=ccy,
            exchange_rate=_plain(self.exchange_rate),
            issue_date=self.issue_date,
            due_date=self.due_date,
            payment_terms_days=self.payment_terms_days,
            payment_terms=self.payment_terms,
            notes=self.notes,
            subtotal=money_scale(self.subtotal, ccy),
            discount_total=money_scale(self.discount_total, ccy),
            tax_total=money_scale(self.tax_total, ccy),
            grand_total=money_scale(self.grand_total, ccy),
            paid_amount=money_scale(self.paid_amount, ccy),
            issued_at=self.issued_at,
            cancelled_at=self.cancelled_at,
            lines=tuple(line.to_dto(ccy) for line in self.lines),
        )

    def __repr__(self) -> str:
        return (
            f"<InvoiceModel {self.number or 'draft'} "
            f"status={self.status} total={self.grand_total} paid={self.paid_amount}>"
        )


# ---------------------------------------------------------------------------
# 2. InvoiceLineModel
# ---------------------------------------------------------------------------


class InvoiceLineModel(TrackedBase):
    """One line of an invoice, with the rounded amounts the engine produced."""

    __tablename__ = "billing_invoice_lines"

    __table_args__ = (
        Index("idx_billing_invoice_lines_invoice_id", "invoice_id"),
        Index("idx_billing_invoice_lines_product_id", "product_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_invoices.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(nullable=False)

    line_gross: Mapped[Decimal] = mapped_column(nullable=False)
    line_discount: Mapped[Decimal] = mapped_column(nullable=False)
    line_taxable: Mapped[Decimal] = mapped_column(nullable=False)
    line_tax: Mapped[Decimal] = mapped_column(nullable=False)
    line_total: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="lines")

    def to_dto(self, currency: str) -> InvoiceLine:
        """Convert ORM model to frozen dataclass."""
        return InvoiceLine(
            id=self.id,
            line_number=self.line_number,
            product_id=self.product_id,
            variant_id=self.variant_id,
            code=self.code,
            description=self.description,
            quantity=_plain(self.quantity),
            unit_price=money_scale(self.unit_price, currency),
            discount_percent=_plain(self.discount_percent),
            tax_rate=_plain(self.tax_rate),
            line_gross=money_scale(self.line_gross, currency),
            line_discount=money_scale(self.line_discount, currency),
            line_taxable=money_scale(self.line_taxable, currency),
            line_tax=money_scale(self.line_tax, currency),
            line_total=money_scale(self.line_total, currency),
        )


# ---------------------------------------------------------------------------
# 3. PaymentModel
# ---------------------------------------------------------------------------


class PaymentModel(TrackedBase):
    """A payment applied to an invoice.  Immutable; deletion reverses it."""

    __tablename__ = "billing_payments"

    __table_args__ = (
        Index("idx_billing_payments_invoice_id", "invoice_id"),
        Index("idx_billing_payments_payment_date", "payment_date"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_invoices.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    received_amount: Mapped[Decimal] = mapped_column(nullable=False)
    settlement_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE_TYPE, nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("billing_bank_accounts.id"), nullable=True
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="payments")

    def to_dto(self) -> Payment:
        """Convert ORM model to frozen dataclass."""
        return Payment(
            id=self.id,
            invoice_id=self.invoice_id,
            amount=money_scale(self.amount, self.currency),
            currency=self.currency,
            received_amount=money_scale(self.received_amount, self.settlement_currency),
            settlement_currency=self.settlement_currency,
            exchange_rate=_plain(self.exchange_rate),
            method=PaymentMethod(self.method),
            reference=self.reference,
            bank_account_id=self.bank_account_id,
            payment_date=self.payment_date,
            notes=self.notes,
        )


# ---------------------------------------------------------------------------
# 4. BankAccountModel
# ---------------------------------------------------------------------------


class BankAccountModel(TrackedBase):
    """A company bank account; its currency is checked against settlements."""

    __tablename__ = "billing_bank_accounts"

    __table_args__ = (
        UniqueConstraint("account_number", name="uq_billing_bank_accounts_number"),
    )

    bank_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str] = mapped_column(String(50), nullable=False)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False, default="checking")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self) -> BankAccount:
        """Convert ORM model to frozen dataclass."""
        return BankAccount(
            id=self.id,
            bank_name=self.bank_name,
            account_number=self.account_number,
            account_type=self.account_type,
            currency=self.currency,
            is_default=self.is_default,
            is_active=self.is_active,
        )


# ---------------------------------------------------------------------------
# 5. InvoiceAuditModel
# ---------------------------------------------------------------------------


class InvoiceAuditModel(TrackedBase):
    """One row per lifecycle action; survives deletion of the invoice."""

    __tablename__ = "billing_invoice_audit"

    __table_args__ = (
        UniqueConstraint("invoice_id", "entry_number", name="uq_billing_invoice_audit_entry"),
    )

    invoice_id: Mapped[UUID] = mapped_column(nullable=False)
    entry_number: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor_id: Mapped[UUID] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    detail: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    def to_dto(self) -> InvoiceAuditEntry:
        """Convert ORM model to frozen dataclass."""
        return InvoiceAuditEntry(
            id=self.id,
            invoice_id=self.invoice_id,
            entry_number=self.entry_number,
            action=InvoiceAction(self.action),
            from_status=InvoiceStatus(self.from_status) if self.from_status else None,
            to_status=InvoiceStatus(self.to_status) if self.to_status else None,
            actor_id=self.actor_id,
            reason=self.reason,
            detail=dict(self.detail or {}),
        )
