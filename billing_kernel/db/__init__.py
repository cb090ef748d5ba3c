"""Database layer: declarative base, column types and engine/session management."""

from billing_kernel.db.base import RATE_TYPE, Base, ExactDecimal, TrackedBase, UUIDString

__all__ = ["RATE_TYPE", "Base", "ExactDecimal", "TrackedBase", "UUIDString"]
