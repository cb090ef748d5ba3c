"""
Race tests for invoice issue and payment commands.

Each worker thread drives its own InvoicingService on its own session and
connection; a barrier releases them together.

- Concurrent issues never share or skip a number.
- Concurrent payments never push an invoice past its grand total.
- A payment removed twice at once is reversed only once.

Run with: pytest tests/concurrency/test_invoice_races.py -v
Skip with: pytest -m "not slow_locks"
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from billing_kernel.exceptions import (
    InvalidTransitionError,
    OverpaymentRejectedError,
    PaymentNotFoundError,
)
from billing_modules.invoicing.models import InvoiceStatus

pytestmark = pytest.mark.slow_locks

WORKERS = 8


def _run_together(tasks):
    """Run callables on WORKERS threads released by one barrier; collect outcomes."""
    barrier = threading.Barrier(len(tasks))

    def _call(task):
        barrier.wait(timeout=30)
        try:
            return ("ok", task())
        except Exception as exc:  # noqa: BLE001
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
        return list(pool.map(_call, tasks))


class TestConcurrentIssue:
    def test_numbers_are_unique_and_gap_free(self, service, create_draft, make_service, actor_id):
        drafts = [create_draft() for _ in range(WORKERS)]
        services = [make_service() for _ in range(WORKERS)]

        outcomes = _run_together([
            (lambda svc=svc, draft=draft: svc.issue_invoice(draft.id, actor_id))
            for svc, draft in zip(services, drafts)
        ])

        assert all(kind == "ok" for kind, _ in outcomes), outcomes
        numbers = sorted(invoice.number for _, invoice in outcomes)
        assert numbers == [f"FAC-{n:08d}" for n in range(1, WORKERS + 1)]

    def test_same_draft_issued_once(self, service, create_draft, make_service, inventory, actor_id):
        draft = create_draft()
        services = [make_service() for _ in range(WORKERS)]

        outcomes = _run_together([
            (lambda svc=svc: svc.issue_invoice(draft.id, actor_id)) for svc in services
        ])

        succeeded = [value for kind, value in outcomes if kind == "ok"]
        failed = [value for kind, value in outcomes if kind == "error"]
        assert len(succeeded) == 1
        assert succeeded[0].number == "FAC-00000001"
        assert all(isinstance(exc, InvalidTransitionError) for exc in failed)
        assert len(inventory.decrements) == 1
        assert service.issue_invoice(create_draft().id, actor_id).number == "FAC-00000002"


class TestConcurrentPayments:
    def test_never_overpaid(self, service, issued_invoice, make_service, actor_id):
        services = [make_service() for _ in range(WORKERS)]

        outcomes = _run_together([
            (lambda svc=svc: svc.register_payment(
                issued_invoice.id, Decimal("20.00"), "USD", actor_id,
            ))
            for svc in services
        ])

        succeeded = [value for kind, value in outcomes if kind == "ok"]
        failed = [value for kind, value in outcomes if kind == "error"]
        assert len(succeeded) == 5
        assert all(
            isinstance(exc, (OverpaymentRejectedError, InvalidTransitionError)) for exc in failed
        )

        invoice = service.get_invoice(issued_invoice.id)
        assert invoice.paid_amount == Decimal("100.00")
        assert invoice.status is InvoiceStatus.PAID
        assert len(service.list_payments(issued_invoice.id)) == 5

    def test_payment_removed_once(self, service, issued_invoice, make_service, actor_id):
        service.register_payment(issued_invoice.id, Decimal("30.00"), "USD", actor_id)
        payment = service.register_payment(issued_invoice.id, Decimal("20.00"), "USD", actor_id)
        services = [make_service() for _ in range(4)]

        outcomes = _run_together([
            (lambda svc=svc: svc.delete_payment(payment.id, actor_id)) for svc in services
        ])

        failed = [value for kind, value in outcomes if kind == "error"]
        assert len(failed) == 3
        assert all(isinstance(exc, PaymentNotFoundError) for exc in failed)

        invoice = service.get_invoice(issued_invoice.id)
        assert invoice.paid_amount == Decimal("30.00")
        assert invoice.status is InvoiceStatus.PARTIAL
