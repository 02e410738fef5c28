from decimal import Decimal

import pytest

from taxrecon.checks import classify_delta, classify_pair, collect_discrepancies, primary_field
from taxrecon.models import ExcelRecord, ExtractedRecord


def excel(**amounts) -> ExcelRecord:
    return ExcelRecord(nif="123456789", **{k: Decimal(v) for k, v in amounts.items()})


def extracted(**amounts) -> ExtractedRecord:
    return ExtractedRecord(nif="123456789", **{k: Decimal(v) for k, v in amounts.items()})


@pytest.mark.parametrize(
    "delta, expected",
    [
        ("0.00", "perfect"),
        ("0.01", "within_tolerance"),
        ("0.02", "discrepancy"),
    ],
)
def test_classify_delta_tolerance_boundary(delta, expected):
    assert classify_delta(Decimal(delta), Decimal("0.01")) == expected


def test_classify_pair_uses_total_for_iva():
    match = classify_pair(
        excel(total_amount="100.00"),
        extracted(total_amount="100.01"),
        recon_type="iva",
        tolerance=Decimal("0.01"),
    )
    assert match.status == "within_tolerance"
    assert match.total_delta == Decimal("0.01")


def test_classify_pair_uses_gross_for_modelo10():
    match = classify_pair(
        excel(gross_amount="1000.00"),
        extracted(gross_amount="998.50"),
        recon_type="modelo10",
    )
    assert match.status == "discrepancy"
    assert match.total_delta == Decimal("1.50")
    assert [delta.field for delta in match.field_deltas] == ["gross_amount"]


def test_offsetting_vat_bands_keep_perfect_status():
    match = classify_pair(
        excel(total_amount="136.00", vat_standard="23.00", vat_intermediate="13.00"),
        extracted(total_amount="136.00", vat_standard="36.00"),
        recon_type="iva",
    )
    assert match.status == "perfect"
    deltas = {delta.field: delta for delta in match.field_deltas}
    assert deltas["vat_total"].status == "perfect"
    assert deltas["vat_standard"].delta == Decimal("13.00")
    assert deltas["vat_intermediate"].status == "discrepancy"
    assert "vat_reduced" not in deltas
    assert {delta.field for delta in match.field_discrepancies} == {"vat_standard", "vat_intermediate"}


def test_primary_field_for_ambos_falls_back_to_gross():
    assert primary_field("ambos", excel(total_amount="1"), extracted()) == "total_amount"
    assert primary_field("ambos", excel(gross_amount="1"), extracted(gross_amount="1")) == "gross_amount"


def test_classify_pair_rejects_mismatched_nifs():
    with pytest.raises(ValueError):
        classify_pair(
            ExcelRecord(nif="123456789"),
            ExtractedRecord(nif="500000000"),
            recon_type="iva",
        )


def test_collect_discrepancies_sorts_and_grades_severity():
    small = classify_pair(
        excel(total_amount="100.00"),
        extracted(total_amount="100.50"),
        recon_type="iva",
    )
    large = classify_pair(
        ExcelRecord(nif="500000000", total_amount=Decimal("200.00"), vat_standard=Decimal("46.00")),
        ExtractedRecord(nif="500000000", total_amount=Decimal("180.00"), vat_standard=Decimal("46.00")),
        recon_type="iva",
    )
    perfect = classify_pair(excel(total_amount="5.00"), extracted(total_amount="5.00"), recon_type="iva")

    items = collect_discrepancies([small, large, perfect])
    assert [(item.nif, item.field, item.delta, item.severity) for item in items] == [
        ("500000000", "total_amount", Decimal("20.00"), "critical"),
        ("123456789", "total_amount", Decimal("0.50"), "error"),
    ]


def test_collect_discrepancies_includes_within_tolerance_pairs_as_warnings():
    match = classify_pair(excel(total_amount="10.00"), extracted(total_amount="10.01"), recon_type="iva")
    items = collect_discrepancies([match])
    assert len(items) == 1
    assert items[0].severity == "warning"
