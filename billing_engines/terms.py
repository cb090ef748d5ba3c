"""
Payment terms - due date and printed label from a number of credit days.

    None  -> no terms recorded, no due date
    0     -> cash ("CONTADO"), due on the issue date
    n > 0 -> credit, due n calendar days after the issue date
"""

from datetime import date, timedelta

from billing_kernel.exceptions import ValidationError

CASH_LABEL = "CONTADO"


def _check_days(payment_terms_days: int | None) -> None:
    if payment_terms_days is None:
        return
    if isinstance(payment_terms_days, bool) or not isinstance(payment_terms_days, int):
        raise ValidationError(
            f"Payment terms must be a whole number of days, got {payment_terms_days!r}",
            field="payment_terms_days",
        )
    if payment_terms_days < 0:
        raise ValidationError(
            f"Payment terms cannot be negative, got {payment_terms_days}",
            field="payment_terms_days",
        )


def derive_due_date(issue_date: date, payment_terms_days: int | None) -> date | None:
    """Due date for an invoice issued on ``issue_date``."""
    _check_days(payment_terms_days)
    if payment_terms_days is None:
        return None
    return issue_date + timedelta(days=payment_terms_days)


def terms_label(payment_terms_days: int | None) -> str | None:
    """Printed terms, e.g. ``CONTADO`` or ``CRÉDITO 15 DÍAS``."""
    _check_days(payment_terms_days)
    if payment_terms_days is None:
        return None
    if payment_terms_days == 0:
        return CASH_LABEL
    return f"CRÉDITO {payment_terms_days} DÍAS"
