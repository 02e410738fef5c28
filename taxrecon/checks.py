"""Deterministic delta checks that classify matched pairs and list discrepancies."""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .models import (
    DISCREPANCY,
    PERFECT,
    WITHIN_TOLERANCE,
    Discrepancy,
    ExcelRecord,
    ExtractedRecord,
    FieldDelta,
    MatchedRecord,
    TaxRecord,
)

DEFAULT_TOLERANCE = Decimal("0.01")
DEFAULT_CRITICAL_THRESHOLD = Decimal("1.00")

_IVA_COMPARED = (
    "total_amount",
    "vat_standard",
    "vat_intermediate",
    "vat_reduced",
    "vat_total",
)
_MODELO10_COMPARED = ("gross_amount", "withholding_amount", "net_amount")

_ZERO = Decimal("0")


def relevant_fields(recon_type: str) -> Tuple[str, ...]:
    if recon_type == "iva":
        return _IVA_COMPARED
    if recon_type == "modelo10":
        return _MODELO10_COMPARED
    if recon_type == "ambos":
        return _IVA_COMPARED + _MODELO10_COMPARED
    raise ValueError(f"Unknown reconciliation type: {recon_type!r}")


def primary_field(recon_type: str, excel: TaxRecord, extracted: TaxRecord) -> str:
    """Field whose delta decides the status of a pair."""

    if recon_type == "iva":
        return "total_amount"
    if recon_type == "modelo10":
        return "gross_amount"
    if excel.total_amount is not None or extracted.total_amount is not None:
        return "total_amount"
    return "gross_amount"


def calculate_delta(a: Optional[Decimal], b: Optional[Decimal]) -> Decimal:
    return abs((a if a is not None else _ZERO) - (b if b is not None else _ZERO))


def classify_delta(delta: Decimal, tolerance: Decimal) -> str:
    # Exact comparison: amounts are cent-quantised decimals.
    if delta == 0:
        return PERFECT
    if delta <= tolerance:
        return WITHIN_TOLERANCE
    return DISCREPANCY


def classify_pair(
    excel: ExcelRecord,
    extracted: ExtractedRecord,
    *,
    recon_type: str,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> MatchedRecord:
    """Build the matched pair; sub-field deltas are reported but never change the status."""

    if excel.nif != extracted.nif:
        raise ValueError(f"Cannot pair NIF {excel.nif} with NIF {extracted.nif}")

    field_deltas: List[FieldDelta] = []
    for name in relevant_fields(recon_type):
        excel_value = excel.amount(name)
        system_value = extracted.amount(name)
        if excel_value is None and system_value is None:
            continue
        delta = calculate_delta(excel_value, system_value)
        field_deltas.append(
            FieldDelta(
                field=name,
                excel_value=excel_value,
                system_value=system_value,
                delta=delta,
                status=classify_delta(delta, tolerance),
            )
        )

    primary = primary_field(recon_type, excel, extracted)
    total_delta = calculate_delta(excel.amount(primary), extracted.amount(primary))
    return MatchedRecord(
        excel=excel,
        extracted=extracted,
        status=classify_delta(total_delta, tolerance),
        total_delta=total_delta,
        field_deltas=tuple(field_deltas),
    )


def evaluate_matches(
    pairs: Iterable[Tuple[ExcelRecord, ExtractedRecord]],
    *,
    recon_type: str,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> list[MatchedRecord]:
    return [
        classify_pair(excel, extracted, recon_type=recon_type, tolerance=tolerance)
        for excel, extracted in pairs
    ]


def severity_for(delta: Decimal, *, tolerance: Decimal, critical_threshold: Decimal) -> str:
    if delta <= tolerance:
        return "warning"
    if delta <= critical_threshold:
        return "error"
    return "critical"


def collect_discrepancies(
    matches: Iterable[MatchedRecord],
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    critical_threshold: Decimal = DEFAULT_CRITICAL_THRESHOLD,
) -> list[Discrepancy]:
    """Flatten every non-perfect pair into per-field entries, worst first."""

    discrepancies: List[Discrepancy] = []
    for match in matches:
        if match.status == PERFECT:
            continue
        for delta in match.field_deltas:
            if delta.delta == 0:
                continue
            discrepancies.append(
                Discrepancy(
                    nif=match.nif,
                    name=match.excel.name or match.extracted.name,
                    field=delta.field,
                    excel_value=delta.excel_value if delta.excel_value is not None else _ZERO,
                    system_value=delta.system_value if delta.system_value is not None else _ZERO,
                    delta=delta.delta,
                    severity=severity_for(
                        delta.delta,
                        tolerance=tolerance,
                        critical_threshold=critical_threshold,
                    ),
                )
            )

    discrepancies.sort(key=lambda item: item.delta, reverse=True)
    return discrepancies
