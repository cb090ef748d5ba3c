"""
billing_engines.tracer -- ``@traced_engine`` decorator emitting BILLING_ENGINE_TRACE.

Wraps a pure engine call with one structured log record carrying the engine
name and version, a short SHA-256 fingerprint of selected keyword arguments,
and ``duration_ms``.  It only reads its inputs and logs; engine purity is
unaffected.

Usage:
    @traced_engine("numbering", "1.0", fingerprint_fields=("pattern", "prefix"))
    def render(self, *, pattern, prefix, ...):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import time
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from typing import Any

from billing_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")


def _canonicalize(value: Any) -> str:
    """Stable text form of ``value`` for hashing; dict keys are sorted."""
    if value is None:
        return "null"
    if is_dataclass(value) and not isinstance(value, type):
        return _canonicalize(asdict(value))
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-hex-char SHA-256 prefix over the named kwargs; missing ones hash as null."""
    canonical = "|".join(
        f"{name}={_canonicalize(kwargs.get(name))}" for name in fingerprint_fields
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator factory; see module docstring."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = compute_input_fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else ""

            t0 = time.monotonic()
            result = func(*args, **kwargs)

            logger.debug(
                "BILLING_ENGINE_TRACE",
                extra={
                    "trace_type": "BILLING_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
