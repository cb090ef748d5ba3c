"""
Invoicing Module Service (``billing_modules.invoicing.service``).

Responsibility
--------------
Command surface of the billing engine: drafting, issuing, cancelling and
deleting invoices, registering and removing payments, and configuring the
number sequence.  Pure computation is delegated to ``billing_engines``;
number allocation to ``billing_kernel.services.sequence_service``; stock
changes to an ``InventoryGateway``.

Architecture position
---------------------
**Modules layer** -- thin glue.  ``InvoicingService`` is the sole public
entry point for invoice commands.  It composes the stateless engines
(``calculate_invoice``, ``NumberingEngine``, ``PaymentReconciler``), the
kernel ``SequenceService`` and the workflow ``guard``.

Invariants enforced
-------------------
* Each public command owns the transaction boundary: commit on success,
  rollback on any exception.
* The invoice row is locked (``SELECT ... FOR UPDATE``) before its status
  or balance is read, so concurrent commands on one invoice serialize.
* Every status change goes through ``workflows.guard``; validation and
  state errors are raised before anything is written.
* Stock requested from the gateway is given back if the command fails
  after the request.

Failure modes
-------------
* ``BillingKernelError`` subclasses -> session rolled back, re-raised as is.
* ``SQLAlchemyError`` -> session rolled back, wrapped in
  ``PersistenceFailureError``.
* Anything else -> session rolled back, re-raised.

Audit relevance
---------------
Every lifecycle command writes an ``InvoiceAuditModel`` row in the same
transaction and emits structured ``*_started``/``*_committed`` log events.

Usage::

    service = InvoicingService(session, inventory, clock=clock)
    draft = service.create_invoice_draft(
        items=[LineItem(product_id="P-1", quantity=Decimal("3"),
                        unit_price=Decimal("10.00"), tax_rate=Decimal("16"))],
        client=ClientRef(id="C-1", name="Distribuidora ABC"),
        currency="USD",
        exchange_rate=Decimal("36.50"),
        actor_id=actor_id,
    )
    issued = service.issue_invoice(draft.id, actor_id)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_config import BillingSettings, get_active_config
from billing_engines.aggregation import calculate_invoice
from billing_engines.line_items import LineItem
from billing_engines.numbering import NumberingEngine, require_unique_pattern
from billing_engines.reconciliation import (
    BalanceSnapshot,
    PaymentReconciler,
    PaymentRequest,
)
from billing_engines.terms import derive_due_date, terms_label
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.values import Currency, to_decimal
from billing_kernel.exceptions import (
    BankAccountNotFoundError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    PersistenceFailureError,
    SequenceNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.sequence_service import SequenceService, SequenceState
from billing_modules.invoicing.inventory import InventoryGateway, adjustments_for
from billing_modules.invoicing.models import (
    BankAccount,
    ClientRef,
    Invoice,
    InvoiceAction,
    InvoiceAuditEntry,
    InvoiceStatus,
    Payment,
    PaymentMethod,
)
from billing_modules.invoicing.orm import (
    BankAccountModel,
    InvoiceAuditModel,
    InvoiceLineModel,
    InvoiceModel,
    PaymentModel,
    money_scale,
)
from billing_modules.invoicing.workflows import SideEffect, guard

logger = get_logger("modules.invoicing.service")

_UNCHANGED: Any = object()


def _as_uuid(value: UUID | str, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field} is not a valid id: {value!r}", field=field) from exc


def _as_decimal(value: Decimal | str | int, field: str) -> Decimal:
    try:
        return to_decimal(value, field)
    except (TypeError, ValueError) as exc:
        raise ValidationError(str(exc), field=field) from exc


def _as_line_items(items: Sequence[LineItem | Mapping[str, Any]]) -> list[LineItem]:
    return [item if isinstance(item, LineItem) else LineItem(**item) for item in items]


class InvoicingService:
    """
    Invoice lifecycle and payment commands.

    Engine composition:
    - calculate_invoice: line and invoice totals
    - NumberingEngine + SequenceService: number rendering and allocation
    - PaymentReconciler: payment validation and balance arithmetic
    - workflows.guard: legal transitions and their side effects

    Transaction boundary: this service commits on success, rolls back on
    failure.  Read-only queries do not commit.
    """

    def __init__(
        self,
        session: Session,
        inventory: InventoryGateway,
        clock: Clock | None = None,
        config: BillingSettings | None = None,
    ):
        self._session = session
        self._inventory = inventory
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()

        self._sequences = SequenceService(
            session, max_retries=self._config.sequence_max_retries,
        )
        self._numbering = NumberingEngine(padding=self._config.number_padding)
        self._reconciler = PaymentReconciler(
            base_currency=self._config.base_currency,
            epsilon_fraction=self._config.payment_epsilon_fraction,
            relative_tolerance=self._config.conversion_relative_tolerance,
        )

    @property
    def settings(self) -> BillingSettings:
        return self._config

    # =========================================================================
    # Transaction boundary
    # =========================================================================

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[list[Callable[[], None]]]:
        """
        Run one command as a unit of work.

        Yields a list of compensations; on failure they run in reverse order
        before the rollback.
        """
        compensations: list[Callable[[], None]] = []
        try:
            yield compensations
            self._session.commit()
        except Exception as exc:
            try:
                for compensate in reversed(compensations):
                    compensate()
            finally:
                self._session.rollback()
            logger.warning(
                "invoicing_command_rolled_back",
                extra={
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "error_code": getattr(exc, "code", None),
                },
            )
            if isinstance(exc, SQLAlchemyError):
                raise PersistenceFailureError(operation, cause=exc) from exc
            raise

    def _lock_invoice(self, invoice_id: UUID) -> InvoiceModel:
        model = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return model

    def _audit(
        self,
        model: InvoiceModel,
        action: InvoiceAction,
        from_status: InvoiceStatus | None,
        to_status: InvoiceStatus | None,
        actor_id: UUID,
        reason: str | None = None,
        detail: dict | None = None,
    ) -> None:
        entry_number = self._session.execute(
            select(func.count())
            .select_from(InvoiceAuditModel)
            .where(InvoiceAuditModel.invoice_id == model.id)
        ).scalar_one() + 1
        self._session.add(
            InvoiceAuditModel(
                invoice_id=model.id,
                entry_number=entry_number,
                action=action.value,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                actor_id=actor_id,
                reason=reason,
                detail=detail or {},
                created_by_id=actor_id,
            )
        )

    # =========================================================================
    # Drafts
    # =========================================================================

    def _apply_draft_fields(
        self,
        model: InvoiceModel,
        items: list[LineItem],
        currency: Currency,
        exchange_rate: Decimal,
        issue_date: date,
        payment_terms_days: int | None,
        actor_id: UUID,
    ) -> None:
        """Recompute every derived field of a draft from its inputs."""
        if exchange_rate <= 0:
            raise ValidationError(
                f"Exchange rate must be greater than zero, got {exchange_rate}",
                field="exchange_rate",
            )
        calculation = calculate_invoice(items=items, currency=currency)
        due_date = derive_due_date(issue_date, payment_terms_days)

        model.currency = currency.code
        model.exchange_rate = exchange_rate
        model.issue_date = issue_date
        model.payment_terms_days = payment_terms_days
        model.payment_terms = terms_label(payment_terms_days)
        model.due_date = due_date
        model.subtotal = calculation.totals.subtotal
        model.discount_total = calculation.totals.discount_total
        model.tax_total = calculation.totals.tax_total
        model.grand_total = calculation.totals.grand_total

        model.lines.clear()
        for number, (item, result) in enumerate(zip(items, calculation.lines), start=1):
            model.lines.append(
                InvoiceLineModel(
                    line_number=number,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    code=item.code,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount_percent=item.discount_percent,
                    tax_rate=item.tax_rate,
                    line_gross=result.line_gross,
                    line_discount=result.line_discount,
                    line_taxable=result.line_taxable,
                    line_tax=result.line_tax,
                    line_total=result.line_total,
                    created_by_id=actor_id,
                )
            )

    def create_invoice_draft(
        self,
        items: Sequence[LineItem | Mapping[str, Any]],
        client: ClientRef,
        currency: str,
        exchange_rate: Decimal | str | int,
        actor_id: UUID,
        scope: str | None = None,
        issue_date: date | None = None,
        payment_terms_days: int | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """
        Persist a new draft with freshly computed totals.

        ``payment_terms_days`` falls back to the configured default.

        Raises:
            ValidationError: Empty items, invalid line, non-positive rate,
                negative terms or missing client name.
            InvalidCurrencyError: Unknown currency code.
        """
        scope = scope or self._config.default_scope
        if payment_terms_days is None:
            payment_terms_days = self._config.default_payment_terms_days

        with LogContext.bind(actor_id=actor_id, scope=scope):
            logger.info("invoice_draft_create_started", extra={
                "client_id": client.id,
                "currency": currency,
                "line_count": len(items),
            })
            with self._transaction("create_invoice_draft"):
                if not client.name or not client.name.strip():
                    raise ValidationError("Invoice requires a client name", field="client")
                ccy = Currency(currency)
                line_items = _as_line_items(items)
                rate = _as_decimal(exchange_rate, "exchange_rate")

                model = InvoiceModel(
                    scope=scope,
                    status=InvoiceStatus.DRAFT.value,
                    client_id=client.id,
                    client_name=client.name,
                    client_code=client.code,
                    client_tax_id=client.tax_id,
                    client_address=client.address,
                    notes=notes,
                    paid_amount=Decimal("0"),
                    created_by_id=actor_id,
                )
                self._apply_draft_fields(
                    model, line_items, ccy, rate,
                    issue_date or self._clock.today(),
                    payment_terms_days, actor_id,
                )
                self._session.add(model)
                self._session.flush()
                self._audit(model, InvoiceAction.UPDATE, None, InvoiceStatus.DRAFT, actor_id,
                            detail={"created": True})
                invoice = model.to_dto()

            logger.info("invoice_draft_created", extra={
                "invoice_id": str(invoice.id),
                "grand_total": str(invoice.grand_total),
                "currency": invoice.currency,
            })
            return invoice

    def update_invoice_draft(
        self,
        invoice_id: UUID | str,
        actor_id: UUID,
        items: Sequence[LineItem | Mapping[str, Any]] | None = None,
        client: ClientRef | None = None,
        currency: str | None = None,
        exchange_rate: Decimal | str | int | None = None,
        issue_date: date | None = None,
        payment_terms_days: int | None = _UNCHANGED,
        notes: str | None = _UNCHANGED,
    ) -> Invoice:
        """
        Change a draft and recompute all totals, lines and the due date.

        Omitted arguments keep their stored values; ``payment_terms_days``
        and ``notes`` may be set to None explicitly.

        Raises:
            InvalidTransitionError: If the invoice is no longer a draft.
        """
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            with self._transaction("update_invoice_draft"):
                model = self._lock_invoice(invoice_id)
                decision = guard(model.status, InvoiceAction.UPDATE)
                current = model.to_dto()

                if items is not None:
                    line_items = _as_line_items(items)
                else:
                    line_items = [
                        LineItem(
                            product_id=line.product_id,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            discount_percent=line.discount_percent,
                            tax_rate=line.tax_rate,
                            description=line.description,
                            variant_id=line.variant_id,
                            code=line.code,
                        )
                        for line in current.lines
                    ]
                if client is not None:
                    if not client.name or not client.name.strip():
                        raise ValidationError("Invoice requires a client name", field="client")
                    model.client_id = client.id
                    model.client_name = client.name
                    model.client_code = client.code
                    model.client_tax_id = client.tax_id
                    model.client_address = client.address
                if notes is not _UNCHANGED:
                    model.notes = notes

                if decision.has(SideEffect.RECOMPUTE_TOTALS):
                    self._apply_draft_fields(
                        model,
                        line_items,
                        Currency(currency or current.currency),
                        current.exchange_rate if exchange_rate is None
                        else _as_decimal(exchange_rate, "exchange_rate"),
                        issue_date or current.issue_date,
                        current.payment_terms_days if payment_terms_days is _UNCHANGED
                        else payment_terms_days,
                        actor_id,
                    )
                decision.check_target(InvoiceStatus.DRAFT)
                model.updated_by_id = actor_id
                self._session.flush()
                self._audit(model, InvoiceAction.UPDATE, InvoiceStatus.DRAFT,
                            InvoiceStatus.DRAFT, actor_id)
                invoice = model.to_dto()

            logger.info("invoice_draft_updated", extra={
                "grand_total": str(invoice.grand_total),
                "line_count": len(invoice.lines),
            })
            return invoice

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _ensure_sequence(self, scope: str) -> None:
        try:
            self._sequences.peek(scope)
        except SequenceNotFoundError:
            pattern = require_unique_pattern(self._config.default_pattern)
            self._sequences.configure(
                scope,
                prefix=self._config.default_prefix,
                pattern=pattern.source,
            )
            logger.info("sequence_auto_configured", extra={
                "scope": scope,
                "prefix": self._config.default_prefix,
                "pattern": self._config.default_pattern,
            })

    def issue_invoice(self, invoice_id: UUID | str, actor_id: UUID) -> Invoice:
        """
        Issue a draft: decrement stock, then allocate its number.

        Stock is requested first so a shortage consumes no number.  If
        allocation or the commit fails afterwards, the stock is restored.

        Raises:
            InvalidTransitionError: If the invoice is not a draft.
            InsufficientStockError: From the inventory gateway, unmodified.
            PersistenceFailureError: If number allocation keeps conflicting.
        """
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        t0 = time.monotonic()
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            logger.info("invoice_issue_started")
            with self._transaction("issue_invoice") as compensations:
                model = self._lock_invoice(invoice_id)
                decision = guard(model.status, InvoiceAction.ISSUE)
                draft = model.to_dto()
                if not draft.lines:
                    raise ValidationError("Cannot issue an invoice without lines", field="items")

                if decision.has(SideEffect.DECREMENT_STOCK):
                    adjustments = adjustments_for(draft.lines, reference=f"invoice:{invoice_id}")
                    self._inventory.decrement(adjustments)
                    compensations.append(lambda: self._inventory.restore(adjustments))

                if decision.has(SideEffect.ALLOCATE_NUMBER):
                    self._ensure_sequence(model.scope)
                    now = self._clock.now()

                    def render(state: SequenceState) -> str:
                        return self._numbering.render(
                            pattern=state.pattern,
                            prefix=state.prefix,
                            sequence_value=state.next_number,
                            now=now,
                            client_name=model.client_name,
                            client_code=model.client_code,
                        )

                    allocated = self._sequences.allocate(model.scope, render)
                    model.number = allocated.number

                model.status = decision.check_target(InvoiceStatus.ISSUED).value
                model.issued_at = self._clock.now()
                model.updated_by_id = actor_id
                self._session.flush()
                self._audit(model, InvoiceAction.ISSUE, InvoiceStatus.DRAFT,
                            InvoiceStatus.ISSUED, actor_id,
                            detail={"number": model.number})
                invoice = model.to_dto()

            logger.info("invoice_issued", extra={
                "invoice_number": invoice.number,
                "grand_total": str(invoice.grand_total),
                "currency": invoice.currency,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            })
            return invoice

    def cancel_invoice(
        self,
        invoice_id: UUID | str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Invoice:
        """
        Cancel an invoice.

        A draft is cancelled without touching stock or the sequence.  An
        issued, partial or paid invoice gets its stock restored; its payments
        stay recorded and its number stays consumed.

        Raises:
            InvalidTransitionError: If the invoice is already cancelled.
        """
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            with self._transaction("cancel_invoice") as compensations:
                model = self._lock_invoice(invoice_id)
                from_status = InvoiceStatus(model.status)
                decision = guard(from_status, InvoiceAction.CANCEL)

                model.status = decision.check_target(InvoiceStatus.CANCELLED).value
                model.cancelled_at = self._clock.now()
                model.updated_by_id = actor_id
                self._session.flush()
                self._audit(model, InvoiceAction.CANCEL, from_status,
                            InvoiceStatus.CANCELLED, actor_id, reason=reason)
                invoice = model.to_dto()

                if decision.has(SideEffect.RESTORE_STOCK):
                    adjustments = adjustments_for(invoice.lines, reference=f"invoice:{invoice_id}")
                    self._inventory.restore(adjustments)
                    compensations.append(lambda: self._inventory.decrement(adjustments))

            logger.info("invoice_cancelled", extra={
                "invoice_number": invoice.number,
                "from_status": from_status.value,
                "paid_amount": str(invoice.paid_amount),
            })
            return invoice

    def delete_invoice(
        self,
        invoice_id: UUID | str,
        actor_id: UUID,
        override: bool = False,
        reason: str | None = None,
    ) -> None:
        """
        Remove an invoice with its lines and payments.

        Drafts are deleted freely.  Anything else needs ``override=True``
        and a reason; stock decremented at issue is restored unless the
        invoice was already cancelled.  The audit trail is kept.

        Raises:
            InvalidTransitionError: If an override is needed but missing.
        """
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            with self._transaction("delete_invoice") as compensations:
                model = self._lock_invoice(invoice_id)
                from_status = InvoiceStatus(model.status)
                decision = guard(from_status, InvoiceAction.DELETE, override=override, reason=reason)
                decision.check_target(None)
                invoice = model.to_dto()

                if decision.requires_warning:
                    logger.warning("invoice_delete_override", extra={
                        "invoice_number": invoice.number,
                        "status": from_status.value,
                        "paid_amount": str(invoice.paid_amount),
                        "reason": reason,
                    })

                self._audit(
                    model, InvoiceAction.DELETE, from_status, None, actor_id,
                    reason=reason,
                    detail={
                        "number": invoice.number,
                        "grand_total": str(invoice.grand_total),
                        "paid_amount": str(invoice.paid_amount),
                        "currency": invoice.currency,
                        "override": override,
                    },
                )
                self._session.delete(model)
                self._session.flush()

                if decision.has(SideEffect.RESTORE_STOCK):
                    adjustments = adjustments_for(invoice.lines, reference=f"invoice:{invoice_id}")
                    self._inventory.restore(adjustments)
                    compensations.append(lambda: self._inventory.decrement(adjustments))

            logger.info("invoice_deleted", extra={
                "invoice_number": invoice.number,
                "from_status": from_status.value,
            })

    # =========================================================================
    # Payments
    # =========================================================================

    def _resolve_bank_account(self, bank_account_id: UUID | str | None) -> BankAccountModel | None:
        if bank_account_id is None:
            return None
        account = self._session.get(BankAccountModel, _as_uuid(bank_account_id, "bank_account_id"))
        if account is None or not account.is_active:
            raise BankAccountNotFoundError(str(bank_account_id))
        return account

    @staticmethod
    def _snapshot(model: InvoiceModel) -> BalanceSnapshot:
        return BalanceSnapshot(
            currency=model.currency,
            grand_total=model.grand_total,
            paid_amount=model.paid_amount,
            exchange_rate=model.exchange_rate,
            invoice_id=str(model.id),
        )

    def register_payment(
        self,
        invoice_id: UUID | str,
        amount: Decimal | str | int | None,
        currency: str,
        actor_id: UUID,
        received_amount: Decimal | str | int | None = None,
        bank_account_id: UUID | str | None = None,
        method: PaymentMethod | str = PaymentMethod.CASH,
        reference: str | None = None,
        payment_date: date | None = None,
        notes: str | None = None,
    ) -> Payment:
        """
        Apply a payment to an issued or partially paid invoice.

        ``currency`` is the settlement currency.  ``amount`` is in invoice
        currency and may be None when ``received_amount`` is given; it is then
        derived through the invoice exchange rate.

        Raises:
            InvalidTransitionError: Invoice is draft, paid or cancelled.
            InvalidAmountError: Amount is missing or not positive.
            OverpaymentRejectedError: Amount exceeds the pending balance.
            CurrencyMismatchError: Settlement inconsistent with the rate or
                the bank account.
            BankAccountNotFoundError: Unknown or inactive bank account.
        """
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            logger.info("payment_register_started", extra={
                "amount": None if amount is None else str(amount),
                "settlement_currency": currency,
            })
            with self._transaction("register_payment"):
                try:
                    payment_method = PaymentMethod(method)
                except ValueError as exc:
                    raise ValidationError(
                        f"Unknown payment method: {method!r}", field="method"
                    ) from exc

                model = self._lock_invoice(invoice_id)
                from_status = InvoiceStatus(model.status)
                decision = guard(from_status, InvoiceAction.APPLY_PAYMENT)
                account = self._resolve_bank_account(bank_account_id)

                result = self._reconciler.reconcile(
                    snapshot=self._snapshot(model),
                    request=PaymentRequest(
                        currency=currency,
                        amount=None if amount is None else _as_decimal(amount, "amount"),
                        received_amount=None if received_amount is None
                        else _as_decimal(received_amount, "received_amount"),
                        bank_account_currency=account.currency if account else None,
                    ),
                )

                to_status = decision.settle(
                    result.new_paid_amount,
                    model.grand_total,
                    self._reconciler.epsilon(model.currency),
                )
                payment = PaymentModel(
                    invoice_id=model.id,
                    amount=result.amount,
                    currency=result.invoice_currency,
                    received_amount=result.received_amount,
                    settlement_currency=result.settlement_currency,
                    exchange_rate=result.exchange_rate,
                    method=payment_method.value,
                    reference=reference,
                    bank_account_id=account.id if account else None,
                    payment_date=payment_date or self._clock.today(),
                    notes=notes,
                    created_by_id=actor_id,
                )
                self._session.add(payment)
                model.paid_amount = result.new_paid_amount
                model.status = to_status.value
                model.updated_by_id = actor_id
                self._session.flush()
                self._audit(
                    model, InvoiceAction.APPLY_PAYMENT, from_status, to_status, actor_id,
                    detail={
                        "payment_id": str(payment.id),
                        "amount": str(result.amount),
                        "received_amount": str(result.received_amount),
                        "settlement_currency": result.settlement_currency,
                    },
                )
                dto = payment.to_dto()

            logger.info("payment_registered", extra={
                "payment_id": str(dto.id),
                "amount": str(dto.amount),
                "from_status": from_status.value,
                "to_status": to_status.value,
                "pending_balance": str(result.pending_balance),
            })
            return dto

    def delete_payment(self, payment_id: UUID | str, actor_id: UUID) -> None:
        """
        Remove a payment and reverse its effect on the invoice.

        The paid amount drops by exactly the payment's amount and the status
        is derived again: issued when nothing remains paid.

        Raises:
            PaymentNotFoundError: Unknown payment.
            InvalidTransitionError: The invoice is cancelled.
        """
        payment_id = _as_uuid(payment_id, "payment_id")
        with LogContext.bind(actor_id=actor_id):
            with self._transaction("delete_payment"):
                invoice_id = self._session.execute(
                    select(PaymentModel.invoice_id).where(PaymentModel.id == payment_id)
                ).scalar_one_or_none()
                if invoice_id is None:
                    raise PaymentNotFoundError(str(payment_id))

                model = self._lock_invoice(invoice_id)
                # Re-read under the invoice lock; a concurrent delete may have won.
                payment = self._session.execute(
                    select(PaymentModel)
                    .where(PaymentModel.id == payment_id)
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if payment is None:
                    raise PaymentNotFoundError(str(payment_id))

                from_status = InvoiceStatus(model.status)
                decision = guard(from_status, InvoiceAction.REMOVE_PAYMENT)

                removed = payment.to_dto()
                reversal = self._reconciler.reverse(
                    snapshot=self._snapshot(model), amount=removed.amount,
                )
                to_status = decision.settle(
                    reversal.new_paid_amount,
                    model.grand_total,
                    self._reconciler.epsilon(model.currency),
                )
                model.paid_amount = reversal.new_paid_amount
                model.status = to_status.value
                model.updated_by_id = actor_id
                self._session.delete(payment)
                self._session.flush()
                self._audit(
                    model, InvoiceAction.REMOVE_PAYMENT, from_status, to_status, actor_id,
                    detail={"payment_id": str(payment_id), "amount": str(reversal.amount)},
                )

            logger.info("payment_deleted", extra={
                "invoice_id": str(invoice_id),
                "payment_id": str(payment_id),
                "amount": str(reversal.amount),
                "from_status": from_status.value,
                "to_status": to_status.value,
            })

    # =========================================================================
    # Numbering
    # =========================================================================

    def get_next_invoice_number_preview(
        self,
        pattern: str | None,
        prefix: str,
        next_number: int,
        client_name: str | None = None,
        client_code: str | None = None,
    ) -> str:
        """Render what ``next_number`` would print as.  Touches no counter."""
        return self._numbering.render(
            pattern=pattern,
            prefix=prefix,
            sequence_value=next_number,
            now=self._clock.now(),
            client_name=client_name,
            client_code=client_code,
        )

    def configure_sequence(
        self,
        scope: str,
        prefix: str,
        pattern: str | None = None,
        next_number: int | None = None,
    ) -> SequenceState:
        """
        Create or update the counter for ``scope``.

        Raises:
            ValidationError: Pattern without ``{NUMBER}``, or a
                ``next_number`` below the current counter.
        """
        compiled = require_unique_pattern(pattern or self._config.default_pattern)
        with LogContext.bind(scope=scope):
            with self._transaction("configure_sequence"):
                state = self._sequences.configure(
                    scope, prefix=prefix, pattern=compiled.source, next_number=next_number,
                )
            return state

    # =========================================================================
    # Bank accounts
    # =========================================================================

    def register_bank_account(
        self,
        bank_name: str,
        account_number: str,
        currency: str,
        actor_id: UUID,
        account_type: str = "checking",
        is_default: bool = False,
    ) -> BankAccount:
        """Add a company bank account.  A new default replaces the old one."""
        with LogContext.bind(actor_id=actor_id):
            with self._transaction("register_bank_account"):
                ccy = Currency(currency)
                if not account_number or not account_number.strip():
                    raise ValidationError("Bank account requires an account number",
                                          field="account_number")
                if is_default:
                    for other in self._session.execute(
                        select(BankAccountModel).where(BankAccountModel.is_default.is_(True))
                    ).scalars():
                        other.is_default = False
                        other.updated_by_id = actor_id
                account = BankAccountModel(
                    bank_name=bank_name,
                    account_number=account_number.strip(),
                    account_type=account_type,
                    currency=ccy.code,
                    is_default=is_default,
                    is_active=True,
                    created_by_id=actor_id,
                )
                self._session.add(account)
                self._session.flush()
                dto = account.to_dto()

            logger.info("bank_account_registered", extra={
                "bank_account_id": str(dto.id),
                "currency": dto.currency,
                "is_default": dto.is_default,
            })
            return dto

    # =========================================================================
    # Queries
    # =========================================================================

    @contextmanager
    def _read(self) -> Iterator[Session]:
        """Read without committing; the transaction is always ended."""
        try:
            yield self._session
        finally:
            self._session.rollback()

    def get_invoice(self, invoice_id: UUID | str) -> Invoice:
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with self._read() as session:
            model = session.execute(
                select(InvoiceModel)
                .where(InvoiceModel.id == invoice_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if model is None:
                raise InvoiceNotFoundError(str(invoice_id))
            return model.to_dto()

    def list_payments(self, invoice_id: UUID | str) -> list[Payment]:
        """Payments of an invoice, oldest first."""
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with self._read() as session:
            rows = session.execute(
                select(PaymentModel)
                .where(PaymentModel.invoice_id == invoice_id)
                .order_by(PaymentModel.payment_date, PaymentModel.created_at)
            ).scalars()
            return [row.to_dto() for row in rows]

    def get_audit_trail(self, invoice_id: UUID | str) -> list[InvoiceAuditEntry]:
        """Lifecycle entries for an invoice, including a deleted one."""
        invoice_id = _as_uuid(invoice_id, "invoice_id")
        with self._read() as session:
            rows = session.execute(
                select(InvoiceAuditModel)
                .where(InvoiceAuditModel.invoice_id == invoice_id)
                .order_by(InvoiceAuditModel.entry_number)
            ).scalars()
            return [row.to_dto() for row in rows]

    def get_bank_account_balances(self) -> list[tuple[BankAccount, Decimal]]:
        """Received amounts per active bank account, in the account currency."""
        with self._read() as session:
            accounts = session.execute(
                select(BankAccountModel)
                .where(BankAccountModel.is_active.is_(True))
                .order_by(BankAccountModel.bank_name)
            ).scalars().all()
            balances = {account.id: Decimal("0") for account in accounts}
            for account_id, received in session.execute(
                select(PaymentModel.bank_account_id, PaymentModel.received_amount)
                .where(PaymentModel.bank_account_id.in_(list(balances)))
            ):
                balances[account_id] += received
            return [
                (account.to_dto(), money_scale(balances[account.id], account.currency))
                for account in accounts
            ]
