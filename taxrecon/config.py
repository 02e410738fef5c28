"""Runtime configuration for reconciliation runs."""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .checks import DEFAULT_CRITICAL_THRESHOLD, DEFAULT_TOLERANCE


def _decimal_env(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = Decimal(raw.strip().replace(",", "."))
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"{name} must be a non-negative number, got {raw!r}")
    return value


@dataclass(frozen=True)
class ReconConfig:
    """Amount thresholds, in euros, applied by the engine."""

    tolerance: Decimal = DEFAULT_TOLERANCE
    critical_threshold: Decimal = DEFAULT_CRITICAL_THRESHOLD

    @classmethod
    def from_env(cls) -> "ReconConfig":
        return cls(
            tolerance=_decimal_env("TAXRECON_TOLERANCE", DEFAULT_TOLERANCE),
            critical_threshold=_decimal_env("TAXRECON_CRITICAL_THRESHOLD", DEFAULT_CRITICAL_THRESHOLD),
        )
