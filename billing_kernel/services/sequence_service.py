"""
SequenceService -- invoice number allocation via locked counter rows.

Responsibility:
    Owns one counter row per issuing scope and hands out each value exactly
    once.  Rendering the value into a printable number is delegated to a
    callback so the kernel stays free of pattern logic.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Called by the
    invoicing service when an invoice is issued.

Invariants enforced:
    - The counter row is the only source of truth for the next number;
      aggregate-max-plus-one over issued invoices is never used.
    - Allocation is lock, read, render, compare-and-set.  The rendered number
      is returned only after the compare-and-set has matched exactly one row.
    - The increment belongs to the caller's transaction: a rollback returns
      the number to the counter.
    - ``next_number`` can be raised but never lowered.

Failure modes:
    - SequenceNotFoundError if no counter is configured for the scope.
    - SequenceConflictError when the compare-and-set misses; retried
      internally up to ``max_retries`` times.
    - PersistenceFailureError once the retries are exhausted.
    - ValidationError when configure() would lower the counter.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import BigInteger, String, select, update
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.exceptions import (
    PersistenceFailureError,
    SequenceConflictError,
    SequenceNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class InvoiceSequenceModel(Base):
    """Lockable counter row, one per issuing scope."""

    __tablename__ = "invoice_sequences"

    scope: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    pattern: Mapped[str] = mapped_column(String(200), nullable=False)
    next_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)


@dataclass(frozen=True)
class SequenceState:
    """Snapshot of a counter row handed to the render callback."""

    scope: str
    prefix: str
    pattern: str
    next_number: int


@dataclass(frozen=True)
class AllocatedNumber:
    """A consumed sequence value and the number rendered from it."""

    scope: str
    value: int
    number: str
    attempts: int


class SequenceService:
    """
    Allocates invoice numbers from per-scope counter rows.

    Does NOT commit; the caller owns the transaction boundary.

    Usage:
        allocated = sequences.allocate("default", lambda s: render(s))
    """

    DEFAULT_MAX_RETRIES = 5

    def __init__(self, session: Session, max_retries: int = DEFAULT_MAX_RETRIES):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        self._session = session
        self._max_retries = max_retries

    def configure(
        self,
        scope: str,
        prefix: str,
        pattern: str,
        next_number: int | None = None,
    ) -> SequenceState:
        """
        Create or update the counter row for ``scope``.

        ``next_number`` defaults to 1 for a new counter and to the current
        value for an existing one.  Lowering an existing counter is rejected
        since already-issued numbers would be reissued.
        """
        if next_number is not None and next_number < 1:
            raise ValidationError(
                f"next_number must be >= 1, got {next_number}", field="next_number"
            )

        counter = self._lock(scope)
        if counter is None:
            counter = InvoiceSequenceModel(
                scope=scope,
                prefix=prefix,
                pattern=pattern,
                next_number=next_number or 1,
            )
            self._session.add(counter)
            logger.info(
                "sequence_configured",
                extra={"scope": scope, "prefix": prefix, "pattern": pattern,
                       "next_number": counter.next_number, "new_counter": True},
            )
        else:
            if next_number is not None and next_number < counter.next_number:
                raise ValidationError(
                    f"next_number {next_number} is below the current value "
                    f"{counter.next_number} for scope '{scope}'; numbers would repeat",
                    field="next_number",
                )
            counter.prefix = prefix
            counter.pattern = pattern
            if next_number is not None:
                counter.next_number = next_number
            logger.info(
                "sequence_configured",
                extra={"scope": scope, "prefix": prefix, "pattern": pattern,
                       "next_number": counter.next_number, "new_counter": False},
            )

        self._session.flush()
        return self._state(counter)

    def peek(self, scope: str) -> SequenceState:
        """Read the counter without locking or incrementing it."""
        counter = self._session.execute(
            select(InvoiceSequenceModel)
            .where(InvoiceSequenceModel.scope == scope)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if counter is None:
            raise SequenceNotFoundError(scope)
        return self._state(counter)

    def allocate(
        self,
        scope: str,
        render: Callable[[SequenceState], str],
    ) -> AllocatedNumber:
        """
        Consume the next value for ``scope`` and return its rendered number.

        ``render`` is called with the locked counter's state; if it raises,
        nothing is consumed.
        """
        t0 = time.monotonic()
        last_conflict: SequenceConflictError | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                value, number = self._allocate_once(scope, render)
            except SequenceConflictError as exc:
                last_conflict = exc
                logger.warning(
                    "sequence_conflict_retry",
                    extra={"scope": scope, "attempt": attempt,
                           "max_retries": self._max_retries,
                           "observed_number": exc.observed_number},
                )
                continue

            logger.debug(
                "sequence_allocated",
                extra={"scope": scope, "value": value, "number": number,
                       "attempts": attempt,
                       "duration_ms": round((time.monotonic() - t0) * 1000, 2)},
            )
            return AllocatedNumber(scope=scope, value=value, number=number, attempts=attempt)

        logger.error(
            "sequence_retries_exhausted",
            extra={"scope": scope, "max_retries": self._max_retries},
        )
        raise PersistenceFailureError("invoice number allocation", cause=last_conflict)

    def _allocate_once(
        self,
        scope: str,
        render: Callable[[SequenceState], str],
    ) -> tuple[int, str]:
        counter = self._lock(scope)
        if counter is None:
            raise SequenceNotFoundError(scope)

        observed = counter.next_number
        number = render(self._state(counter))

        if not self._compare_and_set(counter, observed):
            raise SequenceConflictError(scope, observed)
        return observed, number

    def _compare_and_set(self, counter: InvoiceSequenceModel, observed: int) -> bool:
        """Advance the counter iff it still holds ``observed``."""
        result = self._session.execute(
            update(InvoiceSequenceModel)
            .where(
                InvoiceSequenceModel.id == counter.id,
                InvoiceSequenceModel.next_number == observed,
            )
            .values(next_number=observed + 1)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def _lock(self, scope: str) -> InvoiceSequenceModel | None:
        return self._session.execute(
            select(InvoiceSequenceModel)
            .where(InvoiceSequenceModel.scope == scope)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _state(counter: InvoiceSequenceModel) -> SequenceState:
        return SequenceState(
            scope=counter.scope,
            prefix=counter.prefix,
            pattern=counter.pattern,
            next_number=counter.next_number,
        )
