"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every rejection the engine produces must tell the caller WHICH invariant
failed so the UI can render an actionable message.  Callers catch by type,
read the machine-readable ``code``, and use the structured attributes:

    try:
        service.register_payment(invoice_id, amount, "USD", actor_id)
    except OverpaymentRejectedError as e:
        show_error(f"Pending balance is {e.pending_balance} {e.currency}")

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BillingKernelError:

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |
    +-- InvalidTransitionError
    |
    +-- OverpaymentRejectedError
    |
    +-- CurrencyError
    |   +-- InvalidCurrencyError
    |   +-- CurrencyMismatchError
    |
    +-- InsufficientStockError
    |
    +-- ConcurrencyError
    |   +-- SequenceConflictError
    |
    +-- PersistenceFailureError
    |
    +-- NotFoundError
        +-- InvoiceNotFoundError
        +-- PaymentNotFoundError
        +-- BankAccountNotFoundError
        +-- SequenceNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Bad line item, empty items, bad pattern
                | INVALID_AMOUNT              | Payment amount is not positive
----------------|-----------------------------|-----------------------------------------
Lifecycle       | INVALID_TRANSITION          | Action not legal from current status
----------------|-----------------------------|-----------------------------------------
Payment         | OVERPAYMENT_REJECTED        | Amount exceeds pending balance
----------------|-----------------------------|-----------------------------------------
Currency        | INVALID_CURRENCY            | Not a valid ISO 4217 code
                | CURRENCY_MISMATCH           | Settlement amount inconsistent with rate
----------------|-----------------------------|-----------------------------------------
Inventory       | INSUFFICIENT_STOCK          | Raised by the inventory gateway
----------------|-----------------------------|-----------------------------------------
Concurrency     | SEQUENCE_CONFLICT           | Counter changed under the allocator
----------------|-----------------------------|-----------------------------------------
Persistence     | PERSISTENCE_FAILURE         | Storage failed or retries exhausted
----------------|-----------------------------|-----------------------------------------
Lookup          | INVOICE_NOT_FOUND           | Invoice ID doesn't exist
                | PAYMENT_NOT_FOUND           | Payment ID doesn't exist
                | BANK_ACCOUNT_NOT_FOUND      | Bank account ID doesn't exist
                | SEQUENCE_NOT_FOUND          | No counter configured for scope

===============================================================================
HANDLING PATTERNS
===============================================================================

1. VALIDATION AND STATE ERRORS ARE RAISED BEFORE ANY MUTATION.
   A caller that receives one may correct the input and call again.

2. SequenceConflictError NEVER REACHES THE CALLER ON SUCCESS.
   The sequence service retries it internally; exhausting the retries is
   reported as PersistenceFailureError.

3. InsufficientStockError IS SURFACED UNMODIFIED.
   It originates in the inventory collaborator; the engine only rolls back.

===============================================================================
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation


class ValidationError(BillingKernelError):
    """Input rejected before any computation or mutation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidAmountError(ValidationError):
    """Payment amount must be strictly positive."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Decimal | None):
        self.amount = amount
        super().__init__(
            f"Payment amount must be greater than zero, got {amount}",
            field="amount",
        )


# Lifecycle


class InvalidTransitionError(BillingKernelError):
    """The requested action is not legal from the invoice's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, status: str, action: str, reason: str | None = None):
        self.status = status
        self.action = action
        self.reason = reason
        message = f"Cannot {action} an invoice in status '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# Payments


class OverpaymentRejectedError(BillingKernelError):
    """Payment would push paid amount above the invoice grand total."""

    code: str = "OVERPAYMENT_REJECTED"

    def __init__(self, amount: Decimal, pending_balance: Decimal, currency: str):
        self.amount = amount
        self.pending_balance = pending_balance
        self.currency = currency
        super().__init__(
            f"Payment amount {amount} exceeds pending balance of "
            f"{pending_balance} {currency}"
        )


# Currency


class CurrencyError(BillingKernelError):
    """Base exception for currency-related errors."""

    code: str = "CURRENCY_ERROR"


class InvalidCurrencyError(CurrencyError):
    """Currency code is not a recognised ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: '{currency}'")


class CurrencyMismatchError(CurrencyError):
    """Settlement currency or amount is inconsistent with the invoice."""

    code: str = "CURRENCY_MISMATCH"

    def __init__(
        self,
        invoice_currency: str,
        settlement_currency: str,
        message: str,
        expected_amount: Decimal | None = None,
        received_amount: Decimal | None = None,
    ):
        self.invoice_currency = invoice_currency
        self.settlement_currency = settlement_currency
        self.expected_amount = expected_amount
        self.received_amount = received_amount
        super().__init__(message)


# Inventory


class InsufficientStockError(BillingKernelError):
    """
    Raised by the inventory collaborator when stock cannot be decremented.

    The engine surfaces it unmodified after rolling back the issue.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: str,
        requested: Decimal,
        available: Decimal,
        variant_id: str | None = None,
    ):
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        target = f"variant {variant_id}" if variant_id else f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {target}: "
            f"requested {requested}, available {available}"
        )


# Concurrency


class ConcurrencyError(BillingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class SequenceConflictError(ConcurrencyError):
    """The sequence counter changed between read and compare-and-set."""

    code: str = "SEQUENCE_CONFLICT"

    def __init__(self, scope: str, observed_number: int):
        self.scope = scope
        self.observed_number = observed_number
        super().__init__(
            f"Sequence '{scope}' moved past {observed_number} during allocation"
        )


# Persistence


class PersistenceFailureError(BillingKernelError):
    """Opaque storage failure; the operation was not applied."""

    code: str = "PERSISTENCE_FAILURE"

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        message = f"Persistence failure during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


# Lookups


class NotFoundError(BillingKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class PaymentNotFoundError(NotFoundError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class BankAccountNotFoundError(NotFoundError):
    """Bank account with given ID was not found or is inactive."""

    code: str = "BANK_ACCOUNT_NOT_FOUND"

    def __init__(self, bank_account_id: str):
        self.bank_account_id = bank_account_id
        super().__init__(f"Bank account not found: {bank_account_id}")


class SequenceNotFoundError(NotFoundError):
    """No invoice sequence is configured for the issuing scope."""

    code: str = "SEQUENCE_NOT_FOUND"

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"No invoice sequence configured for scope '{scope}'")
