"""High-level orchestration: load files, reconcile, annotate and write reports."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from .checks import DEFAULT_CRITICAL_THRESHOLD, DEFAULT_TOLERANCE
from .engine import reconcile
from .llm import annotate_discrepancies
from .models import ReconciliationResult
from .normalization import load_sources
from .report import export_report_to_text, generate_audit_report, write_csv, write_json, write_text

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineOutcome:
    result: Optional[ReconciliationResult] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    conclusion: Optional[str] = None
    outputs: List[Path] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and self.result is not None


def run_reconciliation(
    *,
    reference_path: Path,
    system_path: Path,
    out_dir: Path,
    tolerance: Decimal | float = DEFAULT_TOLERANCE,
    critical_threshold: Decimal | float = DEFAULT_CRITICAL_THRESHOLD,
    recon_type: Optional[str] = None,
    client_name: Optional[str] = None,
    fiscal_year: Optional[int] = None,
    quarter: Optional[int] = None,
    annotate: bool = False,
) -> PipelineOutcome:
    reference, system = load_sources(reference_path, system_path, recon_type=recon_type)

    outcome = PipelineOutcome()
    outcome.warnings = [f"Excel: {w}" for w in reference.warnings] + [
        f"Sistema: {w}" for w in system.warnings
    ]
    outcome.errors = [f"Excel: {e}" for e in reference.errors] + [f"Sistema: {e}" for e in system.errors]
    for warning in outcome.warnings:
        LOGGER.warning(warning)
    if outcome.errors:
        for error in outcome.errors:
            LOGGER.error(error)
        return outcome

    result = reconcile(
        reference.records,
        system.records,
        recon_type=recon_type or reference.recon_type or "iva",
        tolerance=tolerance,
        critical_threshold=critical_threshold,
        warnings=outcome.warnings,
    )
    if annotate and result.discrepancies:
        result = replace(result, discrepancies=tuple(annotate_discrepancies(result.discrepancies)))

    report = generate_audit_report(
        result,
        client_name=client_name,
        fiscal_year=fiscal_year,
        quarter=quarter,
    )

    out_dir.mkdir(parents=True, exist_ok=True)
    csv_path = out_dir / "recon_discrepancies.csv"
    json_path = out_dir / "recon_result.json"
    report_path = out_dir / "recon_audit.txt"

    write_csv(csv_path, result.discrepancies)
    write_json(json_path, result)
    write_text(report_path, export_report_to_text(report))

    LOGGER.info(
        "Reconciliation %s: %s (match rate %d%%)",
        result.recon_type,
        report.conclusion,
        result.summary.match_rate,
    )
    outcome.result = result
    outcome.conclusion = report.conclusion
    outcome.outputs = [csv_path, json_path, report_path]
    return outcome
