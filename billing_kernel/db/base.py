"""
Module: billing_kernel.db.base
Responsibility: Declarative base classes shared by every billing ORM model.
Architecture position: Kernel > DB.  Lowest-level import target; it MUST NOT
    import from services/, domain/, or any outer package.

Invariants enforced:
    - Every row has a uuid4 primary key stored as a 36-character string, so
      SQLite and PostgreSQL behave identically.
    - Decimal annotations map to ExactDecimal(38, 9): Numeric on PostgreSQL,
      fixed-point text on SQLite, whose NUMERIC affinity is a binary float.
      Monetary values are never stored as float.
    - TrackedBase rows record who created and last touched them.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Context, Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID persisted as String(36); converted back to ``uuid.UUID`` on load."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class ExactDecimal(TypeDecorator):
    """
    Decimal column that round-trips exactly on every backend.

    PostgreSQL gets ``Numeric(precision, scale)``.  SQLite gets the value as
    fixed-point text at ``scale`` places.  Either way the value is quantized
    half-up to ``scale`` before it is written.  Aggregate in Python, not SQL:
    SQLite's SUM() over text columns goes through float.
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int = 38, scale: int = 9):
        super().__init__(precision=precision, scale=scale, asdecimal=True)
        self.precision = precision
        self.scale = scale
        self._exponent = Decimal(1).scaleb(-scale)
        self._context = Context(prec=precision, rounding=ROUND_HALF_UP)

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(self.precision + 2))
        return dialect.type_descriptor(Numeric(self.precision, self.scale, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantized = value.quantize(self._exponent, context=self._context)
        if dialect.name == "sqlite":
            return format(quantized, "f")
        return quantized

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))


# Exchange rates carry more scale than amounts.
RATE_TYPE = ExactDecimal(38, 12)


class Base(DeclarativeBase):
    """Declarative base with a uuid4 ``id`` and the kernel's type map."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: ExactDecimal(38, 9),
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base adding creation/update timestamps and actor ids.

    ``created_by_id`` is mandatory; ``updated_by_id`` is set by the service
    on every mutating command.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(UUIDString(), nullable=False)

    updated_by_id: Mapped[PyUUID | None] = mapped_column(UUIDString(), nullable=True)
