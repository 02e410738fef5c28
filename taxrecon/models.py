"""Data models used by the reconciliation workflow."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Tuple, Union

ReconciliationType = Literal["iva", "modelo10", "ambos"]
MatchStatus = Literal["perfect", "within_tolerance", "discrepancy"]
Severity = Literal["warning", "error", "critical"]

RECONCILIATION_TYPES: Tuple[str, ...] = ("iva", "modelo10", "ambos")

PERFECT = "perfect"
WITHIN_TOLERANCE = "within_tolerance"
DISCREPANCY = "discrepancy"

PURCHASE = "purchase"
SALE = "sale"

IVA_FIELDS: Tuple[str, ...] = (
    "total_amount",
    "base_standard",
    "vat_standard",
    "base_intermediate",
    "vat_intermediate",
    "base_reduced",
    "vat_reduced",
    "base_exempt",
)

MODELO10_FIELDS: Tuple[str, ...] = (
    "gross_amount",
    "withholding_amount",
    "net_amount",
)

# Summed when several rows share a NIF. The withholding rate is a percentage.
AMOUNT_FIELDS: Tuple[str, ...] = IVA_FIELDS + MODELO10_FIELDS

FIELD_LABELS: Dict[str, str] = {
    "total_amount": "Total",
    "base_standard": "Base 23%",
    "vat_standard": "IVA 23%",
    "base_intermediate": "Base 13%",
    "vat_intermediate": "IVA 13%",
    "base_reduced": "Base 6%",
    "vat_reduced": "IVA 6%",
    "base_exempt": "Isento",
    "vat_total": "IVA Total",
    "gross_amount": "Valor Bruto",
    "withholding_amount": "Retenção",
    "net_amount": "Valor Líquido",
}

CENT = Decimal("0.01")


def _fmt(value: Optional[Decimal]) -> str:
    return f"{value:.2f}" if value is not None else ""


def _num(value: Optional[Decimal]) -> float | None:
    return float(value) if value is not None else None


@dataclass(frozen=True, slots=True)
class TaxRecord:
    """Fields shared by reference rows and system rows, keyed by NIF."""

    nif: str
    name: Optional[str] = None
    document_date: Optional[date] = None
    document_reference: Optional[str] = None
    direction: str = PURCHASE
    total_amount: Optional[Decimal] = None
    base_standard: Optional[Decimal] = None
    vat_standard: Optional[Decimal] = None
    base_intermediate: Optional[Decimal] = None
    vat_intermediate: Optional[Decimal] = None
    base_reduced: Optional[Decimal] = None
    vat_reduced: Optional[Decimal] = None
    base_exempt: Optional[Decimal] = None
    gross_amount: Optional[Decimal] = None
    withholding_amount: Optional[Decimal] = None
    withholding_rate: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    income_category: Optional[str] = None

    @property
    def vat_total(self) -> Optional[Decimal]:
        parts = (self.vat_standard, self.vat_intermediate, self.vat_reduced)
        if all(part is None for part in parts):
            return None
        return sum((part or Decimal("0") for part in parts), Decimal("0"))

    @property
    def has_vat_fields(self) -> bool:
        return any(
            value is not None
            for value in (self.vat_standard, self.vat_intermediate, self.vat_reduced)
        )

    @property
    def has_modelo10_fields(self) -> bool:
        return self.gross_amount is not None or self.withholding_amount is not None

    def amount(self, field_name: str) -> Optional[Decimal]:
        """Return a monetary field by name, including the derived ``vat_total``."""

        if field_name == "vat_total":
            return self.vat_total
        if field_name not in AMOUNT_FIELDS:
            raise KeyError(field_name)
        return getattr(self, field_name)

    def serialise(self) -> dict[str, object]:
        return {
            "nif": self.nif,
            "name": self.name,
            "document_date": self.document_date.isoformat() if self.document_date else None,
            "document_reference": self.document_reference,
            "direction": self.direction,
            **{name: _num(getattr(self, name)) for name in AMOUNT_FIELDS},
            "withholding_rate": _num(self.withholding_rate),
            "income_category": self.income_category,
        }


@dataclass(frozen=True, slots=True)
class ExcelRecord(TaxRecord):
    """A row of the accountant's reference spreadsheet."""

    row_number: Optional[int] = None

    @property
    def source(self) -> str:
        return "excel"


@dataclass(frozen=True, slots=True)
class ExtractedRecord(TaxRecord):
    """A row exported from the bookkeeping system (invoices or withholdings)."""

    record_id: Optional[str] = None
    file_name: Optional[str] = None
    confidence: Optional[float] = None

    @property
    def source(self) -> str:
        return "system"


AnyRecord = Union[ExcelRecord, ExtractedRecord]


@dataclass(frozen=True, slots=True)
class CoercionResult:
    """Outcome of a tolerant conversion: a value and, when degraded, why."""

    value: object
    warning: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.warning is None


@dataclass(frozen=True, slots=True)
class FieldDelta:
    field: str
    excel_value: Optional[Decimal]
    system_value: Optional[Decimal]
    delta: Decimal
    status: str


@dataclass(frozen=True, slots=True)
class MatchedRecord:
    excel: ExcelRecord
    extracted: ExtractedRecord
    status: str
    total_delta: Decimal
    field_deltas: Tuple[FieldDelta, ...] = ()

    @property
    def nif(self) -> str:
        return self.excel.nif

    @property
    def field_discrepancies(self) -> Tuple[FieldDelta, ...]:
        """Sub-field deltas above tolerance, even when the primary total agrees."""

        return tuple(delta for delta in self.field_deltas if delta.status == DISCREPANCY)

    def as_json(self) -> dict[str, object]:
        return {
            "nif": self.nif,
            "status": self.status,
            "total_delta": float(self.total_delta),
            "field_deltas": [
                {
                    "field": delta.field,
                    "excel_value": _num(delta.excel_value),
                    "system_value": _num(delta.system_value),
                    "delta": float(delta.delta),
                    "status": delta.status,
                }
                for delta in self.field_deltas
            ],
            "excel": self.excel.serialise(),
            "extracted": self.extracted.serialise(),
        }


@dataclass(frozen=True, slots=True)
class Discrepancy:
    nif: str
    field: str
    excel_value: Decimal
    system_value: Decimal
    delta: Decimal
    severity: str
    name: Optional[str] = None
    explanation: str = ""
    actions: Tuple[str, ...] = ()
    annotation_source: str = ""

    @property
    def label(self) -> str:
        return FIELD_LABELS.get(self.field, self.field)

    def as_dict(self) -> dict[str, str]:
        return {
            "nif": self.nif,
            "name": self.name or "",
            "field": self.label,
            "excel_value": _fmt(self.excel_value),
            "system_value": _fmt(self.system_value),
            "delta": _fmt(self.delta),
            "severity": self.severity,
            "explanation": self.explanation,
            "actions": "; ".join(self.actions),
            "annotation_source": self.annotation_source,
        }

    def as_json(self) -> dict[str, object]:
        return {
            "nif": self.nif,
            "name": self.name,
            "field": self.field,
            "excel_value": float(self.excel_value),
            "system_value": float(self.system_value),
            "delta": float(self.delta),
            "severity": self.severity,
            "explanation": self.explanation,
            "actions": list(self.actions),
            "annotation_source": self.annotation_source,
        }


@dataclass(frozen=True, slots=True)
class ReconciliationSummary:
    total_excel: int
    total_extracted: int
    match_rate: int
    perfect_matches: int
    within_tolerance: int
    outside_tolerance: int
    missing: int
    extra: int


@dataclass(frozen=True, slots=True)
class BreakdownLine:
    """Reference total against system total for one category figure."""

    excel: Decimal
    system: Decimal
    delta: Decimal
    status: str

    def as_json(self) -> dict[str, object]:
        return {
            "excel": float(self.excel),
            "system": float(self.system),
            "delta": float(self.delta),
            "status": self.status,
        }


@dataclass(frozen=True, slots=True)
class IvaBreakdown:
    vat_deductible: BreakdownLine
    vat_liquidated: Optional[BreakdownLine] = None
    balance: Optional[BreakdownLine] = None

    def as_json(self) -> dict[str, object]:
        return {
            "vat_deductible": self.vat_deductible.as_json(),
            "vat_liquidated": self.vat_liquidated.as_json() if self.vat_liquidated else None,
            "balance": self.balance.as_json() if self.balance else None,
        }


@dataclass(frozen=True, slots=True)
class Modelo10Breakdown:
    gross_income: BreakdownLine
    withholding: BreakdownLine
    unique_nifs_excel: int
    unique_nifs_system: int

    def as_json(self) -> dict[str, object]:
        return {
            "gross_income": self.gross_income.as_json(),
            "withholding": self.withholding.as_json(),
            "unique_nifs_excel": self.unique_nifs_excel,
            "unique_nifs_system": self.unique_nifs_system,
        }


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    recon_type: str
    tolerance: Decimal
    matches: Tuple[MatchedRecord, ...]
    missing: Tuple[ExcelRecord, ...]
    extra: Tuple[ExtractedRecord, ...]
    summary: ReconciliationSummary
    discrepancies: Tuple[Discrepancy, ...]
    is_zero_delta: bool
    iva_recon: Optional[IvaBreakdown] = None
    modelo10_recon: Optional[Modelo10Breakdown] = None
    warnings: Tuple[str, ...] = ()

    def as_json(self) -> dict[str, object]:
        summary = self.summary
        return {
            "recon_type": self.recon_type,
            "tolerance": float(self.tolerance),
            "is_zero_delta": self.is_zero_delta,
            "summary": {
                "total_excel": summary.total_excel,
                "total_extracted": summary.total_extracted,
                "match_rate": summary.match_rate,
                "perfect_matches": summary.perfect_matches,
                "within_tolerance": summary.within_tolerance,
                "outside_tolerance": summary.outside_tolerance,
                "missing": summary.missing,
                "extra": summary.extra,
            },
            "iva_recon": self.iva_recon.as_json() if self.iva_recon else None,
            "modelo10_recon": self.modelo10_recon.as_json() if self.modelo10_recon else None,
            "matches": [match.as_json() for match in self.matches],
            "missing": [record.serialise() for record in self.missing],
            "extra": [record.serialise() for record in self.extra],
            "discrepancies": [item.as_json() for item in self.discrepancies],
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class ParseResult:
    """Records produced from one source file plus the data-quality messages."""

    records: List[AnyRecord] = field(default_factory=list)
    recon_type: Optional[str] = None
    headers: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class DiscrepancyAnnotation:
    """Explanation attached to a discrepancy by the annotation service."""

    explanation: str
    actions: Tuple[str, ...] = ()
    confidence: Optional[float] = None
    source: str = "openai"
    raw_response: Dict[str, object] | None = None
