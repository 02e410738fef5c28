"""Pure reconciliation of reference records against system records."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Sequence

from .aggregate import (
    build_iva_breakdown,
    build_modelo10_breakdown,
    build_summary,
    excel_side,
    is_zero_delta,
    system_side,
)
from .checks import (
    DEFAULT_CRITICAL_THRESHOLD,
    DEFAULT_TOLERANCE,
    collect_discrepancies,
    evaluate_matches,
)
from .matching import match_records
from .models import RECONCILIATION_TYPES, ExcelRecord, ExtractedRecord, ReconciliationResult

LOGGER = logging.getLogger(__name__)


def _as_decimal(value: Decimal | float | str, name: str) -> Decimal:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{name} must be a non-negative amount, got {value!r}")
    return amount


def reconcile(
    excel_records: Iterable[ExcelRecord],
    extracted_records: Iterable[ExtractedRecord],
    *,
    recon_type: str,
    tolerance: Decimal | float | str = DEFAULT_TOLERANCE,
    critical_threshold: Decimal | float | str = DEFAULT_CRITICAL_THRESHOLD,
    warnings: Sequence[str] = (),
) -> ReconciliationResult:
    """Run normalised records through matching, classification and aggregation.

    The function has no side effects: the same inputs always give an equal
    result, and every collection in the result is an immutable tuple.
    ``warnings`` carries data-quality messages gathered while parsing so they
    travel with the result into reports.
    """

    if recon_type not in RECONCILIATION_TYPES:
        raise ValueError(f"Unknown reconciliation type: {recon_type!r}")
    tolerance = _as_decimal(tolerance, "tolerance")
    critical_threshold = _as_decimal(critical_threshold, "critical_threshold")

    excel_records = list(excel_records)
    extracted_records = list(extracted_records)

    matched = match_records(excel_records, extracted_records)
    matches = evaluate_matches(matched.items(), recon_type=recon_type, tolerance=tolerance)
    discrepancies = collect_discrepancies(
        matches,
        tolerance=tolerance,
        critical_threshold=critical_threshold,
    )

    summary = build_summary(
        matches,
        matched.missing,
        matched.extra,
        total_excel=len(excel_records),
        total_extracted=len(extracted_records),
    )

    reference = excel_side(matches, matched.missing)
    system = system_side(matches, matched.extra)
    iva_recon = None
    modelo10_recon = None
    if recon_type in ("iva", "ambos"):
        iva_recon = build_iva_breakdown(reference, system, tolerance=tolerance)
    if recon_type in ("modelo10", "ambos"):
        modelo10_recon = build_modelo10_breakdown(reference, system, tolerance=tolerance)

    zero_delta = is_zero_delta(matches, matched.missing, matched.extra)
    LOGGER.debug(
        "Reconciled %s: match rate %d%%, %d discrepancies, zero delta=%s",
        recon_type,
        summary.match_rate,
        len(discrepancies),
        zero_delta,
    )

    return ReconciliationResult(
        recon_type=recon_type,
        tolerance=tolerance,
        matches=tuple(matches),
        missing=tuple(matched.missing),
        extra=tuple(matched.extra),
        summary=summary,
        discrepancies=tuple(discrepancies),
        is_zero_delta=zero_delta,
        iva_recon=iva_recon,
        modelo10_recon=modelo10_recon,
        warnings=tuple(warnings),
    )
