"""Rendering utilities for machine-readable and human-readable outputs."""
from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .models import BreakdownLine, Discrepancy, ReconciliationResult

APPROVED = "APROVADO"
NEEDS_REVIEW = "REQUER_REVISAO"
REJECTED = "REPROVADO"

REVIEW_MIN_MATCH_RATE = 95
REVIEW_MAX_DISCREPANCIES = 2

CSV_FIELDS = [
    "nif",
    "name",
    "field",
    "excel_value",
    "system_value",
    "delta",
    "severity",
    "explanation",
    "actions",
    "annotation_source",
]

_WIDE = "═" * 60
_THIN = "─" * 60


@dataclass(slots=True)
class AuditReport:
    title: str
    generated_at: datetime
    result: ReconciliationResult
    conclusion: str
    notes: List[str] = field(default_factory=list)
    client_name: Optional[str] = None
    fiscal_year: Optional[int] = None
    quarter: Optional[int] = None


def format_currency(value: Decimal | float) -> str:
    """Format euros the pt-PT way: ``1 234,56 €``."""

    amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    integer, _, cents = f"{abs(amount):.2f}".partition(".")
    groups = []
    while len(integer) > 3:
        groups.insert(0, integer[-3:])
        integer = integer[:-3]
    groups.insert(0, integer)
    return f"{sign}{' '.join(groups)},{cents} €"


def truncate_messages(messages: Sequence[str], limit: int = 10) -> list[str]:
    """Keep the first ``limit`` messages and note how many were left out."""

    shown = list(messages[:limit])
    hidden = len(messages) - len(shown)
    if hidden > 0:
        shown.append(f"... e mais {hidden}")
    return shown


def generate_audit_report(
    result: ReconciliationResult,
    *,
    client_name: Optional[str] = None,
    fiscal_year: Optional[int] = None,
    quarter: Optional[int] = None,
) -> AuditReport:
    summary = result.summary
    notes: List[str] = []
    if summary.missing:
        notes.append(f"{summary.missing} NIFs no Excel não encontrados no sistema")
    if summary.extra:
        notes.append(f"{summary.extra} NIFs no sistema não existem no Excel")
    if summary.outside_tolerance:
        notes.append(f"{summary.outside_tolerance} NIFs com discrepâncias acima da tolerância")

    if result.is_zero_delta:
        conclusion = APPROVED
        notes.insert(0, "Zero Delta alcançado - todos os valores conferem")
    elif summary.match_rate >= REVIEW_MIN_MATCH_RATE and summary.outside_tolerance <= REVIEW_MAX_DISCREPANCIES:
        conclusion = NEEDS_REVIEW
        notes.insert(0, "Pequenas discrepâncias detectadas - revisão manual recomendada")
    else:
        conclusion = REJECTED
        notes.insert(0, "Discrepâncias significativas - reconciliação falhada")

    return AuditReport(
        title="Relatório de Auditoria de Reconciliação",
        generated_at=datetime.now(timezone.utc),
        result=result,
        conclusion=conclusion,
        notes=notes,
        client_name=client_name,
        fiscal_year=fiscal_year,
        quarter=quarter,
    )


def _breakdown_lines(label: str, line: BreakdownLine) -> list[str]:
    return [
        f"{label + ' (Excel):':<26}{format_currency(line.excel)}",
        f"{label + ' (Sistema):':<26}{format_currency(line.system)}",
        f"{'Delta:':<26}{format_currency(line.delta)}",
    ]


def export_report_to_text(report: AuditReport, *, max_items: int = 20) -> str:
    result = report.result
    summary = result.summary
    lines = [_WIDE, report.title.upper(), _WIDE, ""]
    lines.append(f"Data: {report.generated_at.strftime('%d/%m/%Y %H:%M')} UTC")
    if report.client_name:
        lines.append(f"Cliente: {report.client_name}")
    if report.fiscal_year:
        lines.append(f"Ano Fiscal: {report.fiscal_year}")
    if report.quarter:
        lines.append(f"Trimestre: {report.quarter}º")
    lines.append(f"Tipo: {result.recon_type}")
    lines.append(f"Tolerância: {format_currency(result.tolerance)}")

    lines += ["", _THIN, "SUMÁRIO", _THIN]
    lines.append(f"{'Total no Excel:':<23}{summary.total_excel}")
    lines.append(f"{'Total Extraído:':<23}{summary.total_extracted}")
    lines.append(f"{'Taxa de Match:':<23}{summary.match_rate}%")
    lines.append(f"{'Matches Perfeitos:':<23}{summary.perfect_matches}")
    lines.append(f"{'Dentro Tolerância:':<23}{summary.within_tolerance}")
    lines.append(f"{'Fora Tolerância:':<23}{summary.outside_tolerance}")
    lines.append(f"{'Em Falta:':<23}{summary.missing}")
    lines.append(f"{'Extras:':<23}{summary.extra}")

    if result.iva_recon:
        lines += ["", _THIN, "RECONCILIAÇÃO IVA", _THIN]
        lines += _breakdown_lines("IVA Dedutível", result.iva_recon.vat_deductible)
        if result.iva_recon.vat_liquidated:
            lines.append("")
            lines += _breakdown_lines("IVA Liquidado", result.iva_recon.vat_liquidated)
        if result.iva_recon.balance:
            lines.append("")
            lines += _breakdown_lines("Saldo", result.iva_recon.balance)

    if result.modelo10_recon:
        recon = result.modelo10_recon
        lines += ["", _THIN, "RECONCILIAÇÃO MODELO 10", _THIN]
        lines += _breakdown_lines("Valor Bruto", recon.gross_income)
        lines.append("")
        lines += _breakdown_lines("Retenção", recon.withholding)
        lines.append("")
        lines.append(f"{'NIFs Únicos (Excel):':<26}{recon.unique_nifs_excel}")
        lines.append(f"{'NIFs Únicos (Sistema):':<26}{recon.unique_nifs_system}")

    if result.discrepancies:
        lines += ["", _THIN, "DISCREPÂNCIAS", _THIN]
        rendered = [
            f"[{item.severity.upper()}] NIF {item.nif} {item.label}: "
            f"Excel {format_currency(item.excel_value)} / Sistema {format_currency(item.system_value)} "
            f"(delta {format_currency(item.delta)})"
            + (f" - {item.explanation}" if item.explanation else "")
            for item in result.discrepancies
        ]
        lines += truncate_messages(rendered, max_items)

    if result.missing:
        lines += ["", "Em falta no sistema:"]
        lines += truncate_messages(
            [f"  {record.nif} {record.name or ''}".rstrip() for record in result.missing], max_items
        )
    if result.extra:
        lines += ["", "Extras no sistema:"]
        lines += truncate_messages(
            [f"  {record.nif} {record.name or ''}".rstrip() for record in result.extra], max_items
        )

    lines += ["", _WIDE, f"CONCLUSÃO: {report.conclusion}", _WIDE]

    if report.notes:
        lines += ["", "Notas:"]
        lines += [f"  • {note}" for note in report.notes]

    if result.warnings:
        lines += ["", f"Avisos de importação ({len(result.warnings)}):"]
        lines += [f"  {warning}" for warning in truncate_messages(result.warnings, max_items)]

    return "\n".join(lines)


def write_csv(path: Path, discrepancies: Iterable[Discrepancy]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for item in discrepancies:
            writer.writerow(item.as_dict())


def write_json(path: Path, result: ReconciliationResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = result.as_json()
    payload["generated_at"] = datetime.now(timezone.utc).isoformat()
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        handle.write(content)
