import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from taxrecon.llm import (
    _extract_json_payload,
    annotate_discrepancies,
    annotate_discrepancy,
    set_structured_client_for_testing,
)
from taxrecon.models import Discrepancy


class _ContentObject:
    def __init__(self, text: str):
        self.text = text


class _MessageObject:
    def __init__(self, text: str):
        self.content = [_ContentObject(text)]


class _OutputWithContent:
    def __init__(self, text: str):
        self.content = [_ContentObject(text)]


class _OutputWithMessage:
    def __init__(self, text: str):
        self.message = _MessageObject(text)


@pytest.mark.parametrize(
    "response",
    [
        SimpleNamespace(output_text='{"foo": 1}'),
        SimpleNamespace(output=[_OutputWithContent('{"foo": 1}')]),
        SimpleNamespace(outputs=[_OutputWithContent('{"foo": 1}')]),
        SimpleNamespace(output=[_OutputWithMessage('{"foo": 1}')]),
        SimpleNamespace(choices=[_OutputWithContent('{"foo": 1}')]),
    ],
)
def test_extract_json_payload_handles_various_sdk_shapes(response):
    payload = _extract_json_payload(response)
    assert payload == {"foo": 1}


def test_extract_json_payload_ignores_non_json_blocks():
    response = SimpleNamespace(
        outputs=[
            _OutputWithContent("not-json"),
            _OutputWithContent(json.dumps({"foo": "bar"})),
        ]
    )

    payload = _extract_json_payload(response)
    assert payload == {"foo": "bar"}


def test_extract_json_payload_returns_none_without_json():
    assert _extract_json_payload(SimpleNamespace(output=[])) is None
    assert _extract_json_payload(SimpleNamespace(output=[_OutputWithContent("still not json")])) is None


def _sample_discrepancy(field: str = "total_amount", excel: str = "100.00", system: str = "90.00") -> Discrepancy:
    excel_value = Decimal(excel)
    system_value = Decimal(system)
    return Discrepancy(
        nif="123456789",
        name="Alfa Lda",
        field=field,
        excel_value=excel_value,
        system_value=system_value,
        delta=abs(excel_value - system_value),
        severity="critical",
    )


def test_annotate_discrepancies_uses_structured_client():
    annotated = annotate_discrepancies([_sample_discrepancy(), _sample_discrepancy("gross_amount")])

    assert [item.annotation_source for item in annotated] == ["openai", "openai"]
    assert annotated[0].explanation == "O total difere; falta uma fatura no sistema."
    assert annotated[0].actions == ("Rever NIF 123456789",)
    assert annotated[1].explanation == "O rendimento bruto difere; falta um recibo."
    assert annotated[0].delta == Decimal("10.00")


def test_annotate_discrepancy_falls_back_when_summary_missing():
    class _NoSummaryClient:
        def request(self, *, messages, schema):  # type: ignore[override]
            return {"actions": ["Pedir segunda via da fatura", 3]}

    set_structured_client_for_testing(_NoSummaryClient())
    try:
        annotation = annotate_discrepancy(_sample_discrepancy("withholding_amount", "230.00", "200.00"))
    finally:
        set_structured_client_for_testing(None)

    assert annotation.source == "rule"
    assert annotation.explanation.startswith("A retenção na fonte difere.")
    assert "NIF 123456789: Excel 230.00 EUR, sistema 200.00 EUR, diferença 30.00 EUR" in annotation.explanation
    assert annotation.actions == ("Pedir segunda via da fatura",)


def test_annotate_discrepancy_without_api_key_uses_rules(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("TAXRECON_OPENAI_API_KEY", raising=False)
    set_structured_client_for_testing(None)

    annotation = annotate_discrepancy(_sample_discrepancy("vat_total"))

    assert annotation.source == "rule"
    assert annotation.actions == ("Rever a classificação do IVA por taxa",)
    assert "NIF 123456789" in annotation.explanation
