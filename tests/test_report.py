import csv
import json
from decimal import Decimal
from pathlib import Path

import pytest

from taxrecon.engine import reconcile
from taxrecon.models import ExcelRecord, ExtractedRecord
from taxrecon.report import (
    APPROVED,
    NEEDS_REVIEW,
    REJECTED,
    export_report_to_text,
    format_currency,
    generate_audit_report,
    truncate_messages,
    write_csv,
    write_json,
)


def _result(excel_total: str, system_total: str, *, system_nif: str = "123456789"):
    return reconcile(
        [ExcelRecord(nif="123456789", name="Alfa Lda", total_amount=Decimal(excel_total), vat_standard=Decimal("23.00"))],
        [ExtractedRecord(nif=system_nif, total_amount=Decimal(system_total), vat_standard=Decimal("23.00"))],
        recon_type="iva",
    )


@pytest.mark.parametrize(
    "value, expected",
    [
        (Decimal("1234.56"), "1 234,56 €"),
        (Decimal("0"), "0,00 €"),
        (Decimal("-1234567.891"), "-1 234 567,89 €"),
        (0.005, "0,01 €"),
    ],
)
def test_format_currency(value, expected):
    assert format_currency(value) == expected


def test_truncate_messages():
    messages = [f"Linha {index}" for index in range(13)]
    assert truncate_messages(messages) == messages[:10] + ["... e mais 3"]
    assert truncate_messages(messages[:2]) == messages[:2]


def test_conclusions_follow_result():
    assert generate_audit_report(_result("100.00", "100.00")).conclusion == APPROVED
    assert generate_audit_report(_result("100.01", "100.00")).conclusion == NEEDS_REVIEW
    assert generate_audit_report(_result("100.00", "90.00")).conclusion == REJECTED
    assert generate_audit_report(_result("100.00", "100.00", system_nif="500000000")).conclusion == REJECTED


def test_export_report_to_text_lists_sections():
    report = generate_audit_report(
        _result("100.00", "90.00"),
        client_name="Cliente Exemplo",
        fiscal_year=2024,
        quarter=1,
    )

    text = export_report_to_text(report)

    assert "Cliente: Cliente Exemplo" in text
    assert "Ano Fiscal: 2024" in text
    assert "SUMÁRIO" in text
    assert "RECONCILIAÇÃO IVA" in text
    assert "RECONCILIAÇÃO MODELO 10" not in text
    assert "DISCREPÂNCIAS" in text
    assert "[CRITICAL] NIF 123456789 Total" in text
    assert "CONCLUSÃO: REPROVADO" in text
    assert "Discrepâncias significativas" in text


def test_export_report_lists_missing_and_extra():
    report = generate_audit_report(_result("100.00", "100.00", system_nif="500000000"))
    text = export_report_to_text(report)
    assert "Em falta no sistema:" in text
    assert "  123456789 Alfa Lda" in text
    assert "Extras no sistema:" in text
    assert "1 NIFs no Excel não encontrados no sistema" in text


def test_write_csv_and_json(tmp_path: Path):
    result = _result("100.00", "90.00")
    csv_path = tmp_path / "nested" / "discrepancies.csv"
    json_path = tmp_path / "result.json"

    write_csv(csv_path, result.discrepancies)
    write_json(json_path, result)

    with csv_path.open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert rows == [
        {
            "nif": "123456789",
            "name": "Alfa Lda",
            "field": "Total",
            "excel_value": "100.00",
            "system_value": "90.00",
            "delta": "10.00",
            "severity": "critical",
            "explanation": "",
            "actions": "",
            "annotation_source": "",
        }
    ]

    payload = json.loads(json_path.read_text(encoding="utf-8"))
    assert payload["recon_type"] == "iva"
    assert payload["is_zero_delta"] is False
    assert payload["summary"]["outside_tolerance"] == 1
    assert payload["matches"][0]["status"] == "discrepancy"
    assert payload["discrepancies"][0]["delta"] == 10.0
    assert "generated_at" in payload
