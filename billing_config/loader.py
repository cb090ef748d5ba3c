"""
Configuration Loader (``billing_config.loader``).

Reads a YAML settings file with ``yaml.safe_load`` and parses it into a
frozen ``BillingSettings``.  Callers use ``billing_config.get_active_config``;
this module is the tooling underneath it.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``config_id``/``version``  -> ``KeyError``.
* Out-of-range values  -> ``ValueError`` naming the key.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import BillingSettings
from billing_engines.numbering import compile_pattern

_KNOWN_KEYS = frozenset({
    "config_id",
    "version",
    "base_currency",
    "sequence",
    "payments",
    "invoices",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _decimal(value: Any, key: str) -> Decimal:
    if isinstance(value, float):
        # YAML floats arrive as binary floats; go through repr for the literal digits.
        value = repr(value)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{key}: not a decimal value: {value!r}") from e
    if not result.is_finite() or result < 0:
        raise ValueError(f"{key}: must be a non-negative number, got {value!r}")
    return result


def _positive_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{key}: must be a positive integer, got {value!r}")
    return value


def _numbered_pattern(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"sequence.default_pattern: must be a string, got {value!r}")
    compiled = compile_pattern(value)
    if not compiled.has_number:
        raise ValueError(
            f"sequence.default_pattern: '{compiled.source}' must contain {{NUMBER}}, "
            "otherwise every issued invoice renders the same number"
        )
    return compiled.source


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"{name}: must be a mapping, got {type(section).__name__}")
    return section


def parse_settings(data: dict[str, Any]) -> BillingSettings:
    """
    Parse a settings mapping into ``BillingSettings``.

    Raises:
        KeyError: if ``config_id`` or ``version`` is missing.
        ValueError: on unknown top-level keys or invalid values.
    """
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"Unknown billing configuration keys: {sorted(unknown)}")

    sequence = _section(data, "sequence")
    payments = _section(data, "payments")
    invoices = _section(data, "invoices")

    terms = invoices.get("default_payment_terms_days")
    if terms is not None and (isinstance(terms, bool) or not isinstance(terms, int) or terms < 0):
        raise ValueError(
            f"invoices.default_payment_terms_days: must be a non-negative integer, got {terms!r}"
        )

    base_currency = str(data.get("base_currency", "VES")).upper().strip()
    if len(base_currency) != 3:
        raise ValueError(f"base_currency: must be a 3-letter ISO 4217 code, got {base_currency!r}")

    return BillingSettings(
        config_id=str(data["config_id"]),
        version=_positive_int(data["version"], "version"),
        base_currency=base_currency,
        default_scope=str(sequence.get("default_scope", "default")),
        default_prefix=str(sequence.get("default_prefix", "FAC")),
        default_pattern=_numbered_pattern(sequence.get("default_pattern", "{PREFIX}-{NUMBER}")),
        number_padding=_positive_int(sequence.get("number_padding", 8), "sequence.number_padding"),
        sequence_max_retries=_positive_int(
            sequence.get("max_retries", 5), "sequence.max_retries"
        ),
        payment_epsilon_fraction=_decimal(
            payments.get("epsilon_fraction", "0.01"), "payments.epsilon_fraction"
        ),
        conversion_relative_tolerance=_decimal(
            payments.get("conversion_relative_tolerance", "0.005"),
            "payments.conversion_relative_tolerance",
        ),
        default_payment_terms_days=terms,
        checksum=compute_checksum(data),
    )


def load_settings(path: Path) -> BillingSettings:
    """Load and parse the settings file at ``path``."""
    return parse_settings(load_yaml_file(path))
