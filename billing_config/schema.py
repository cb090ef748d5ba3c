"""
BillingSettings schema.

The parsed, frozen form of a billing configuration file.  Loader output
only; nothing in this module reads files or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class BillingSettings:
    """Runtime settings for the invoicing module."""

    config_id: str
    version: int

    # Currency the invoice exchange rate is quoted in (units per 1 invoice unit)
    base_currency: str = "VES"

    # Sequence defaults used when a scope is configured without overrides
    default_scope: str = "default"
    default_prefix: str = "FAC"
    default_pattern: str = "{PREFIX}-{NUMBER}"
    number_padding: int = 8
    sequence_max_retries: int = 5

    # Payment thresholds
    payment_epsilon_fraction: Decimal = Decimal("0.01")
    conversion_relative_tolerance: Decimal = Decimal("0.005")

    default_payment_terms_days: int | None = None

    checksum: str = ""
