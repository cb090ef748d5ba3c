"""
Module ORM Registry (``billing_modules._orm_registry``).

Responsibility
--------------
Ensure every SQLAlchemy ORM model is imported so that ``Base.metadata``
contains its table definition before ``create_tables()`` runs.

Architecture position
---------------------
**Modules layer** -- utility.  Imports the kernel's sequence counter model
and every ``billing_modules.*.orm`` module.  ``billing_kernel.db.engine``
calls it lazily from ``create_tables()``.
"""


def import_all_orm_models() -> None:
    """Import kernel and module ORM models.  Idempotent."""
    import billing_kernel.services.sequence_service  # noqa: F401
    import billing_modules.invoicing.orm  # noqa: F401
