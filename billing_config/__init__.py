"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains settings.
    No other component reads configuration files or environment variables.

Architecture position:
    Configuration -- sits beside ``billing_kernel`` and below
    ``billing_modules``.  The kernel and engines never import it; the
    invoicing service translates settings into engine parameters.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``ValueError`` / ``KeyError`` -- the file does not parse into settings.

Audit relevance:
    Every successful call logs ``BILLING_CONFIG_TRACE`` with the config id,
    version and SHA-256 checksum of the parsed content.
"""

from __future__ import annotations

import os
from pathlib import Path

from billing_config.loader import load_settings
from billing_config.schema import BillingSettings
from billing_kernel.logging_config import get_logger

logger = get_logger("config")

CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> BillingSettings:
    """
    Load the active billing settings.

    Resolution order: explicit ``path``, then ``$BILLING_CONFIG_PATH``, then
    the packaged ``sets/default.yaml``.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_PATH)
    settings = load_settings(resolved)

    logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "config_id": settings.config_id,
            "config_version": settings.version,
            "checksum": settings.checksum,
            "config_path": str(resolved),
            "base_currency": settings.base_currency,
        },
    )
    return settings


__all__ = ["BillingSettings", "CONFIG_PATH_ENV", "get_active_config"]
