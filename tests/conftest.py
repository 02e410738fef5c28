import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from taxrecon import llm


@pytest.fixture(autouse=True)
def stubbed_llm_client():
    """Provide deterministic LLM outputs for tests without network access."""

    class _StubClient:
        _SUMMARY_MAP = {
            "Total": "O total difere; falta uma fatura no sistema.",
            "IVA Total": "O IVA difere; reveja as taxas aplicadas.",
            "Valor Bruto": "O rendimento bruto difere; falta um recibo.",
            "Retenção": "A retenção difere; confirme a taxa aplicada.",
        }

        def request(self, *, messages, schema):  # type: ignore[override]
            payload = self._extract_payload(messages)
            schema_name = schema.get("name")
            if schema_name == "tax_discrepancy_annotation":
                return self._annotation_payload(payload)
            raise AssertionError(f"Unexpected schema requested: {schema_name!r}")

        def _extract_payload(self, messages):
            for block in reversed(messages):
                content = block.get("content")
                if not isinstance(content, list):
                    continue
                for item in reversed(content):
                    if not isinstance(item, dict):
                        continue
                    if item.get("type") not in {"text", "input_text"}:
                        continue
                    try:
                        return json.loads(item.get("text", ""))
                    except json.JSONDecodeError:
                        continue
            return {}

        def _annotation_payload(self, payload):
            field = payload.get("field", "")
            return {
                "summary": self._SUMMARY_MAP.get(field, "Reveja o registo manualmente."),
                "actions": [f"Rever NIF {payload.get('nif', '?')}"],
                "confidence": 0.5,
            }

    stub = _StubClient()
    llm.set_structured_client_for_testing(stub)
    yield
    llm.set_structured_client_for_testing(None)
