from datetime import date
from decimal import Decimal

from taxrecon.matching import aggregate_by_nif, match_records
from taxrecon.models import ExcelRecord, ExtractedRecord


def make_excel(nif: str, total: str | None = None, **extra) -> ExcelRecord:
    return ExcelRecord(nif=nif, total_amount=Decimal(total) if total else None, **extra)


def make_extracted(nif: str, total: str | None = None, **extra) -> ExtractedRecord:
    return ExtractedRecord(nif=nif, total_amount=Decimal(total) if total else None, **extra)


def test_match_records_aligns_on_nif():
    excel = [make_excel("123456789", "100.00", row_number=2)]
    extracted = [make_extracted("123456789", "100.00", record_id="inv-1")]

    result = match_records(excel, extracted)
    pairs = list(result.items())
    assert len(pairs) == 1
    excel_rec, extracted_rec = pairs[0]
    assert excel_rec.row_number == 2
    assert extracted_rec.record_id == "inv-1"
    assert result.missing == []
    assert result.extra == []


def test_match_records_separates_missing_and_extra():
    excel = [make_excel("111111111", "10.00"), make_excel("123456789", "20.00")]
    extracted = [make_extracted("222222222", "30.00"), make_extracted("123456789", "20.00")]

    result = match_records(excel, extracted)
    assert [excel_rec.nif for excel_rec, _ in result.items()] == ["123456789"]
    assert [record.nif for record in result.missing] == ["111111111"]
    assert [record.nif for record in result.extra] == ["222222222"]


def test_match_records_ignores_names():
    excel = [make_excel("123456789", "10.00", name="")]
    extracted = [make_extracted("123456789", "10.00", name="Outro Nome Lda")]

    result = match_records(excel, extracted)
    assert len(result.pairs) == 1


def test_aggregate_by_nif_sums_amounts_and_keeps_earliest_date():
    records = [
        make_extracted("123456789", "100.00", document_date=date(2024, 2, 1), vat_standard=Decimal("23.00")),
        make_extracted("500000000", "5.00"),
        make_extracted("123456789", "50.50", document_date=date(2024, 1, 15), name="Alfa"),
    ]

    merged = aggregate_by_nif(records)
    assert [record.nif for record in merged] == ["123456789", "500000000"]
    alfa = merged[0]
    assert alfa.total_amount == Decimal("150.50")
    assert alfa.vat_standard == Decimal("23.00")
    assert alfa.vat_reduced is None
    assert alfa.document_date == date(2024, 1, 15)
    assert alfa.name == "Alfa"


def test_match_records_collapses_duplicates_to_one_pair():
    excel = [make_excel("123456789", "60.00"), make_excel("123456789", "40.00")]
    extracted = [make_extracted("123456789", "100.00")]

    result = match_records(excel, extracted)
    assert len(result.pairs) == 1
    excel_rec, extracted_rec = result.pairs[0]
    assert excel_rec.total_amount == extracted_rec.total_amount == Decimal("100.00")


def test_partition_matches_distinct_nifs():
    excel = [make_excel(nif, "1.00") for nif in ("123456789", "123456789", "500000000", "111111111")]
    extracted = [make_extracted(nif, "1.00") for nif in ("500000000", "222222222", "222222222")]

    result = match_records(excel, extracted)
    assert len(result.pairs) + len(result.missing) == len({r.nif for r in excel})
    assert len(result.pairs) + len(result.extra) == len({r.nif for r in extracted})
