"""NIF-keyed matching between the reference spreadsheet and the system records."""
from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .models import AMOUNT_FIELDS, ExcelRecord, ExtractedRecord, TaxRecord

LOGGER = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=TaxRecord)

_FIRST_VALUE_FIELDS = ("name", "document_reference", "income_category")


class MatchResult:
    """Container for matched and unmatched records."""

    def __init__(self) -> None:
        self.pairs: List[Tuple[ExcelRecord, ExtractedRecord]] = []
        self.missing: List[ExcelRecord] = []
        self.extra: List[ExtractedRecord] = []

    def add_pair(self, excel: ExcelRecord, extracted: ExtractedRecord) -> None:
        self.pairs.append((excel, extracted))

    def items(self):
        return iter(self.pairs)


def _sum_optional(values: Iterable[Optional[Decimal]]) -> Optional[Decimal]:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return sum(present, Decimal("0"))


def _merge(records: Sequence[RecordT]) -> RecordT:
    """Collapse same-NIF records into a single per-beneficiary total."""

    first = records[0]
    if len(records) == 1:
        return first

    changes: Dict[str, object] = {
        name: _sum_optional(getattr(record, name) for record in records)
        for name in AMOUNT_FIELDS
    }
    dates = [record.document_date for record in records if record.document_date is not None]
    changes["document_date"] = min(dates) if dates else None
    for name in _FIRST_VALUE_FIELDS:
        changes[name] = next((getattr(r, name) for r in records if getattr(r, name)), None)
    return replace(first, **changes)


def aggregate_by_nif(records: Iterable[RecordT]) -> List[RecordT]:
    """Return one record per NIF, in order of first appearance."""

    groups: Dict[str, List[RecordT]] = {}
    for record in records:
        groups.setdefault(record.nif, []).append(record)

    merged = [_merge(group) for group in groups.values()]
    collapsed = sum(len(group) - 1 for group in groups.values())
    if collapsed:
        LOGGER.debug("Collapsed %d duplicate-NIF rows into %d NIF totals", collapsed, len(merged))
    return merged


def match_records(
    excel: Iterable[ExcelRecord],
    extracted: Iterable[ExtractedRecord],
) -> MatchResult:
    """Pair reference and system totals by NIF.

    Both sides are pre-aggregated per NIF, which turns the join into a
    one-to-one lookup. Pairs and ``missing`` follow the reference order,
    ``extra`` follows the system order.
    """

    result = MatchResult()
    excel_totals = aggregate_by_nif(excel)
    extracted_totals = aggregate_by_nif(extracted)

    extracted_map: Dict[str, ExtractedRecord] = {record.nif: record for record in extracted_totals}

    seen = set()
    for record in excel_totals:
        counterpart = extracted_map.get(record.nif)
        if counterpart is None:
            result.missing.append(record)
            continue
        seen.add(record.nif)
        result.add_pair(record, counterpart)

    result.extra = [record for record in extracted_totals if record.nif not in seen]

    LOGGER.debug(
        "Matched %d NIFs (%d missing, %d extra)",
        len(result.pairs),
        len(result.missing),
        len(result.extra),
    )
    return result
