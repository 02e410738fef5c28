"""Utilities for reading and normalising reference and system files."""
from __future__ import annotations

import csv
import json
import logging
import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Tuple
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .models import (
    AMOUNT_FIELDS,
    CENT,
    PURCHASE,
    RECONCILIATION_TYPES,
    SALE,
    AnyRecord,
    CoercionResult,
    ExcelRecord,
    ExtractedRecord,
    ParseResult,
)
from .nif import clean_nif, is_blank_nif, validate_nif

LOGGER = logging.getLogger(__name__)

DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y%m%d", "%d.%m.%Y", "%Y/%m/%d")

_EXCEL_EPOCH = date(1899, 12, 30)
_CURRENCY_RE = re.compile(r"[€$£\s ]|EUR", re.IGNORECASE)

HEADER_KEYWORDS = re.compile(
    r"nif|contribuinte|data|total|valor|fatura|factura|documento|emitente|fornecedor"
    r"|refer[eê]ncia|montante|base|iva|incid[eê]ncia|bruto|reten[çc][aã]o|rendimento"
    r"|amount|gross|vat|date|name",
    re.IGNORECASE,
)
HEADER_SCAN_ROWS = 10
NIF_SAMPLE_ROWS = 14
NIF_SAMPLE_MIN_HITS = 3

TEXT_FIELDS = ("name", "document_reference", "income_category")

ColumnCatalog = Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...]

# Order matters: a header is assigned to the first field whose patterns match,
# so specific VAT band and withholding headers are checked before totals.
_CATALOG_SOURCE: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("nif", (
        r"\bnif\b", r"^nif", r"contribuinte", r"n[ºo°]\s*contrib", r"emitente",
        r"suj.*passivo", r"identifica[çc][aã]o\s*fiscal",
    )),
    ("name", (
        r"nome", r"fornecedor", r"cliente", r"benefici[aá]rio", r"entidade",
        r"designa[çc][aã]o", r"raz[aã]o\s*social", r"\bname\b",
    )),
    ("document_date", (r"data", r"date", r"\bdt\b")),
    ("vat_standard", (r"vat_?standard", r"iva.*23", r"imposto.*23", r"i\.v\.a\..*23", r"taxa.*23")),
    ("vat_intermediate", (r"vat_?intermediate", r"iva.*13", r"imposto.*13")),
    ("vat_reduced", (r"vat_?reduced", r"iva.*\b6\b", r"imposto.*\b6\b")),
    ("base_standard", (r"base_?standard", r"base.*23", r"base.*normal", r"incid.*23", r"mat.*colect.*23")),
    ("base_intermediate", (r"base_?intermediate", r"base.*13", r"base.*interm", r"incid.*13")),
    ("base_reduced", (r"base_?reduced", r"base.*\b6\b", r"base.*reduzid", r"incid.*\b6\b")),
    ("base_exempt", (r"isento", r"exempt", r"s/iva", r"sem\s*iva")),
    ("withholding_rate", (r"taxa", r"rate", r"%", r"percentagem")),
    ("withholding_amount", (r"reten[çc][aã]o", r"withhold", r"imposto.*retido", r"\birs\b")),
    ("gross_amount", (r"bruto", r"gross", r"rendimento", r"valor\s*il[ií]quido")),
    ("net_amount", (r"l[ií]quido", r"\bnet\b", r"^net_", r"a\s*receber")),
    ("total_amount", (r"total", r"montante", r"valor")),
    ("document_reference", (
        r"refer[eê]ncia", r"reference", r"documento", r"n[uú]mero", r"\bdoc\b", r"fatura", r"factura",
        r"n[ºo°]\s*doc",
    )),
    ("income_category", (r"categoria", r"category", r"classif")),
    ("direction", (r"movimento", r"dire[çc][aã]o", r"direction", r"compra.*venda")),
    ("record_id", (r"^id$", r"^uuid$")),
    ("file_name", (r"ficheiro", r"file")),
    ("confidence", (r"confian[çc]a", r"confidence")),
)


class NormalizationError(RuntimeError):
    """Raised when a source file cannot be read at all."""


@lru_cache(maxsize=1)
def default_column_catalog() -> ColumnCatalog:
    """Compiled header patterns, built once and shared read-only."""

    return tuple(
        (field_name, tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns))
        for field_name, patterns in _CATALOG_SOURCE
    )


def _to_cents(value: Decimal, text: str, negative: bool = False) -> CoercionResult:
    # quantize fails past the context precision (28 digits), e.g. "1e30".
    try:
        if not value.is_finite():
            raise InvalidOperation
        value = value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return CoercionResult(Decimal("0.00"), f'valor numérico inválido "{text}"')
    return CoercionResult(-value if negative else value)


def coerce_amount(raw: object) -> CoercionResult:
    """Convert a spreadsheet cell into euros, tolerating Portuguese formatting.

    Blank cells yield ``None``. Anything that cannot be read as a number yields
    ``0.00`` together with a warning instead of failing the import.
    """

    if raw is None or isinstance(raw, bool):
        if raw is None:
            return CoercionResult(None)
        return CoercionResult(Decimal("0.00"), f'valor numérico inválido "{raw}"')

    if isinstance(raw, (int, float, Decimal)):
        return _to_cents(Decimal(str(raw)), str(raw))

    text = str(raw).strip()
    if not text:
        return CoercionResult(None)

    negative = text.startswith("(") and text.endswith(")")
    cleaned = _CURRENCY_RE.sub("", text.strip("()"))
    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return CoercionResult(Decimal("0.00"), f'valor numérico inválido "{text}"')
    return _to_cents(value, text, negative)


def coerce_date(raw: object) -> CoercionResult:
    """Convert ISO, Portuguese, compact or Excel-serial dates; ``None`` when unreadable."""

    if raw is None:
        return CoercionResult(None)
    if isinstance(raw, datetime):
        return CoercionResult(raw.date())
    if isinstance(raw, date):
        return CoercionResult(raw)
    if isinstance(raw, float) and not math.isfinite(raw):
        return CoercionResult(None, f'data inválida "{raw}"')
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if 0 < raw < 100000:
            return CoercionResult(_EXCEL_EPOCH + timedelta(days=int(raw)))
        raw = str(int(raw))

    text = str(raw).strip()
    if not text:
        return CoercionResult(None)

    candidates = [text]
    head = re.split(r"[T\s]", text, maxsplit=1)[0]
    if head != text:
        candidates.append(head)

    for candidate in candidates:
        for pattern in DATE_FORMATS:
            try:
                return CoercionResult(datetime.strptime(candidate, pattern).date())
            except ValueError:
                continue
    return CoercionResult(None, f'data inválida "{text}"')


def _coerce_direction(raw: object) -> str:
    text = str(raw or "").strip().lower()
    if any(token in text for token in ("venda", "sale", "liquid", "emitid")):
        return SALE
    return PURCHASE


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def detect_header_row(rows: Sequence[Sequence[object]]) -> Tuple[int, List[str], Optional[str]]:
    """Find the header row among the first rows of a sheet.

    Exports from accounting software often carry a title block above the
    table, so the first row with at least two header-like cells wins.
    """

    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        cells = [_cell_text(cell) for cell in row]
        if len(cells) < 2:
            continue
        hits = sum(1 for cell in cells if 0 < len(cell) < 50 and HEADER_KEYWORDS.search(cell))
        if hits >= 2:
            return index, cells, None

    headers = [_cell_text(cell) for cell in rows[0]] if rows else []
    return 0, headers, "linha de cabeçalho não detectada, a usar a linha 1"


def detect_column_mapping(
    headers: Sequence[str],
    catalog: Optional[ColumnCatalog] = None,
) -> Dict[str, int]:
    """Map record field names to column indexes; the first matching header wins."""

    catalog = catalog or default_column_catalog()
    mapping: Dict[str, int] = {}
    for index, header in enumerate(headers):
        text = (header or "").strip()
        if not text:
            continue
        for field_name, patterns in catalog:
            if any(pattern.search(text) for pattern in patterns):
                if field_name not in mapping:
                    mapping[field_name] = index
                break
    return mapping


def _guess_nif_column(rows: Sequence[Sequence[object]], header_index: int, width: int) -> Optional[int]:
    sample = rows[header_index + 1 : header_index + 1 + NIF_SAMPLE_ROWS]
    for column in range(width):
        hits = sum(
            1
            for row in sample
            if column < len(row) and re.fullmatch(r"\d{9}", clean_nif(row[column]))
        )
        if hits >= NIF_SAMPLE_MIN_HITS:
            return column
    return None


def detect_reconciliation_type(records: Iterable[AnyRecord]) -> str:
    has_iva = False
    has_modelo10 = False
    for record in records:
        has_iva = has_iva or record.has_vat_fields
        has_modelo10 = has_modelo10 or record.has_modelo10_fields
    if has_iva and has_modelo10:
        return "ambos"
    if has_modelo10:
        return "modelo10"
    return "iva"


def normalise_rows(
    rows: Iterable[Sequence[object]],
    *,
    source: str,
    recon_type: Optional[str] = None,
    catalog: Optional[ColumnCatalog] = None,
) -> ParseResult:
    """Turn raw sheet rows into records, collecting warnings instead of failing.

    ``source`` is ``"excel"`` for the reference spreadsheet and ``"system"``
    for the bookkeeping export. Structural problems end up in
    ``ParseResult.errors``; row problems in ``ParseResult.warnings``.
    """

    if source not in ("excel", "system"):
        raise ValueError(f"Unknown record source: {source!r}")
    if recon_type is not None and recon_type not in RECONCILIATION_TYPES:
        raise ValueError(f"Unknown reconciliation type: {recon_type!r}")

    result = ParseResult()
    table = [list(row) for row in rows]
    if not table:
        result.errors.append("Ficheiro vazio ou sem dados")
        return result

    header_index, headers, header_warning = detect_header_row(table)
    result.headers = headers
    if header_warning:
        result.warnings.append(header_warning)
    if len(table) <= header_index + 1:
        result.errors.append("Ficheiro sem linhas de dados")
        return result

    mapping = detect_column_mapping(headers, catalog)
    if "nif" not in mapping:
        column = _guess_nif_column(table, header_index, max(len(row) for row in table))
        if column is None:
            result.errors.append("Coluna de NIF não detectada - verifique se o ficheiro tem coluna de NIF")
            return result
        mapping["nif"] = column
        label = headers[column] if column < len(headers) and headers[column] else f"Coluna {column + 1}"
        result.warnings.append(f'Coluna "{label}" detectada como NIF (fallback)')

    record_cls = ExcelRecord if source == "excel" else ExtractedRecord

    def cell(row: List[object], field_name: str) -> object:
        index = mapping.get(field_name)
        if index is None or index >= len(row):
            return None
        return row[index]

    for row_number, row in enumerate(table[header_index + 1 :], start=header_index + 2):
        if all(_cell_text(value) == "" for value in row):
            continue

        nif = clean_nif(cell(row, "nif"))
        if is_blank_nif(nif):
            result.warnings.append(f"Linha {row_number}: NIF vazio, linha ignorada")
            continue
        if len(nif) != 9:
            result.warnings.append(f'Linha {row_number}: NIF inválido "{nif}" ({len(nif)} dígitos)')
            continue
        valid, _ = validate_nif(nif)
        if not valid:
            result.warnings.append(f"Linha {row_number}: NIF {nif} falha checksum (incluído mesmo assim)")

        values: Dict[str, object] = {"nif": nif}
        for field_name in AMOUNT_FIELDS + ("withholding_rate",):
            if field_name not in mapping:
                continue
            coerced = coerce_amount(cell(row, field_name))
            if coerced.warning:
                result.warnings.append(f"Linha {row_number}: {coerced.warning}")
            values[field_name] = coerced.value

        if "document_date" in mapping:
            coerced = coerce_date(cell(row, "document_date"))
            if coerced.warning:
                result.warnings.append(f"Linha {row_number}: {coerced.warning}")
            values["document_date"] = coerced.value

        for field_name in TEXT_FIELDS:
            if field_name in mapping:
                values[field_name] = _cell_text(cell(row, field_name)) or None

        if "direction" in mapping:
            values["direction"] = _coerce_direction(cell(row, "direction"))

        if record_cls is ExcelRecord:
            values["row_number"] = row_number
        else:
            values["record_id"] = _cell_text(cell(row, "record_id")) or None
            values["file_name"] = _cell_text(cell(row, "file_name")) or None
            confidence = coerce_amount(cell(row, "confidence")).value
            values["confidence"] = float(confidence) if confidence is not None else None

        result.records.append(record_cls(**values))

    if not result.records:
        result.errors.append("Nenhum registo válido encontrado")
        return result

    result.recon_type = recon_type or detect_reconciliation_type(result.records)
    LOGGER.info(
        "Normalised %d %s records (%d warnings, type=%s)",
        len(result.records),
        source,
        len(result.warnings),
        result.recon_type,
    )
    return result


def _sniff_delimiter(sample: str) -> str:
    """Detect a CSV delimiter, defaulting to comma when uncertain."""

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
        return dialect.delimiter
    except csv.Error:
        return ";" if sample.count(";") > sample.count(",") else ","


CSV_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")


def _read_csv(path: Path) -> List[List[object]]:
    # Excel on Portuguese Windows saves CSV as cp1252.
    for encoding in CSV_ENCODINGS:
        try:
            with path.open(newline="", encoding=encoding) as handle:
                sample = handle.read(4096)
                handle.seek(0)
                reader = csv.reader(handle, delimiter=_sniff_delimiter(sample))
                rows = [list(row) for row in reader]
        except UnicodeDecodeError:
            continue
        if encoding != CSV_ENCODINGS[0]:
            LOGGER.debug("Read %s as %s", path, encoding)
        return rows
    raise NormalizationError(f"Could not decode {path} as UTF-8 or Windows-1252")


def _read_xlsx(path: Path) -> List[List[object]]:
    try:
        workbook = load_workbook(filename=path, read_only=True, data_only=True)
    except (BadZipFile, InvalidFileException) as exc:
        raise NormalizationError(f"{path.name} is not a valid .xlsx workbook: {exc}") from exc
    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_json(path: Path) -> List[List[object]]:
    with path.open(encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise NormalizationError(f"Invalid JSON in {path}: {exc}") from exc

    if isinstance(payload, dict):
        payload = payload.get("records", payload.get("data"))
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise NormalizationError(f"Expected a list of objects in {path}")

    headers: List[str] = []
    for item in payload:
        for key in item:
            if key not in headers:
                headers.append(key)
    if not headers:
        return []
    return [list(headers)] + [[item.get(key) for key in headers] for item in payload]


def load_rows(path: Path) -> List[List[object]]:
    """Read a ``.csv``, ``.xlsx``/``.xlsm`` or ``.json`` file into raw rows."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    suffix = path.suffix.lower()
    if suffix in (".csv", ".txt"):
        return _read_csv(path)
    if suffix in (".xlsx", ".xlsm"):
        return _read_xlsx(path)
    if suffix == ".json":
        return _read_json(path)
    if suffix == ".xls":
        raise NormalizationError(f"Legacy .xls workbooks are not supported, save {path.name} as .xlsx")
    raise NormalizationError(f"Unsupported file type: {path}")


def load_file(
    path: Path,
    *,
    source: str,
    recon_type: Optional[str] = None,
    catalog: Optional[ColumnCatalog] = None,
) -> ParseResult:
    rows = load_rows(path)
    return normalise_rows(rows, source=source, recon_type=recon_type, catalog=catalog)


def load_sources(
    reference_path: Path,
    system_path: Path,
    *,
    recon_type: Optional[str] = None,
) -> tuple[ParseResult, ParseResult]:
    """Load both sides; the system export inherits the reference's detected type."""

    reference = load_file(reference_path, source="excel", recon_type=recon_type)
    system = load_file(system_path, source="system", recon_type=recon_type or reference.recon_type)
    return reference, system
