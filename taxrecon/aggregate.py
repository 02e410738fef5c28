"""Roll-ups of matched, missing and extra records into summaries and category totals."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence

from .checks import calculate_delta, classify_delta
from .models import (
    DISCREPANCY,
    PERFECT,
    SALE,
    WITHIN_TOLERANCE,
    BreakdownLine,
    ExcelRecord,
    ExtractedRecord,
    IvaBreakdown,
    MatchedRecord,
    Modelo10Breakdown,
    ReconciliationSummary,
    TaxRecord,
)

_ZERO = Decimal("0")


def calculate_match_rate(accepted: int, expected: int) -> int:
    """Percentage of reference NIFs matched within tolerance; 100 when nothing was expected."""

    if expected == 0:
        return 100
    rate = Decimal(100 * accepted) / Decimal(expected)
    return int(rate.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_summary(
    matches: Sequence[MatchedRecord],
    missing: Sequence[ExcelRecord],
    extra: Sequence[ExtractedRecord],
    *,
    total_excel: int,
    total_extracted: int,
) -> ReconciliationSummary:
    perfect = sum(1 for match in matches if match.status == PERFECT)
    within = sum(1 for match in matches if match.status == WITHIN_TOLERANCE)
    outside = sum(1 for match in matches if match.status == DISCREPANCY)
    return ReconciliationSummary(
        total_excel=total_excel,
        total_extracted=total_extracted,
        match_rate=calculate_match_rate(perfect + within, len(matches) + len(missing)),
        perfect_matches=perfect,
        within_tolerance=within,
        outside_tolerance=outside,
        missing=len(missing),
        extra=len(extra),
    )


def is_zero_delta(
    matches: Iterable[MatchedRecord],
    missing: Sequence[ExcelRecord],
    extra: Sequence[ExtractedRecord],
) -> bool:
    return not missing and not extra and all(match.status == PERFECT for match in matches)


def excel_side(matches: Iterable[MatchedRecord], missing: Iterable[ExcelRecord]) -> List[ExcelRecord]:
    return [match.excel for match in matches] + list(missing)


def system_side(matches: Iterable[MatchedRecord], extra: Iterable[ExtractedRecord]) -> List[ExtractedRecord]:
    return [match.extracted for match in matches] + list(extra)


def _total(records: Iterable[TaxRecord], field_name: str) -> Decimal:
    return sum((record.amount(field_name) or _ZERO for record in records), _ZERO)


def breakdown_line(excel: Decimal, system: Decimal, tolerance: Decimal) -> BreakdownLine:
    delta = calculate_delta(excel, system)
    return BreakdownLine(excel=excel, system=system, delta=delta, status=classify_delta(delta, tolerance))


def build_iva_breakdown(
    excel_records: Sequence[TaxRecord],
    system_records: Sequence[TaxRecord],
    *,
    tolerance: Decimal,
) -> IvaBreakdown:
    """VAT deductible (purchases), and when sales are present, liquidated VAT and balance."""

    excel_sales = [record for record in excel_records if record.direction == SALE]
    system_sales = [record for record in system_records if record.direction == SALE]
    excel_purchases = [record for record in excel_records if record.direction != SALE]
    system_purchases = [record for record in system_records if record.direction != SALE]

    deductible_excel = _total(excel_purchases, "vat_total")
    deductible_system = _total(system_purchases, "vat_total")
    deductible = breakdown_line(deductible_excel, deductible_system, tolerance)

    liquidated: Optional[BreakdownLine] = None
    balance: Optional[BreakdownLine] = None
    if excel_sales or system_sales:
        liquidated_excel = _total(excel_sales, "vat_total")
        liquidated_system = _total(system_sales, "vat_total")
        liquidated = breakdown_line(liquidated_excel, liquidated_system, tolerance)
        balance = breakdown_line(
            liquidated_excel - deductible_excel,
            liquidated_system - deductible_system,
            tolerance,
        )

    return IvaBreakdown(vat_deductible=deductible, vat_liquidated=liquidated, balance=balance)


def build_modelo10_breakdown(
    excel_records: Sequence[TaxRecord],
    system_records: Sequence[TaxRecord],
    *,
    tolerance: Decimal,
) -> Modelo10Breakdown:
    return Modelo10Breakdown(
        gross_income=breakdown_line(
            _total(excel_records, "gross_amount"),
            _total(system_records, "gross_amount"),
            tolerance,
        ),
        withholding=breakdown_line(
            _total(excel_records, "withholding_amount"),
            _total(system_records, "withholding_amount"),
            tolerance,
        ),
        unique_nifs_excel=len({record.nif for record in excel_records}),
        unique_nifs_system=len({record.nif for record in system_records}),
    )
