"""LLM-backed explanations for reconciliation discrepancies."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional, Protocol

from openai import OpenAI

from .models import Discrepancy, DiscrepancyAnnotation

LOGGER = logging.getLogger(__name__)

FIELD_MESSAGES = {
    "total_amount": (
        "O total do documento difere entre o Excel e o sistema. Confirme se falta ou sobra alguma fatura deste fornecedor.",
        ("Comparar as faturas do NIF com o extracto do e-Fatura",),
    ),
    "vat_total": (
        "O IVA total difere. Verifique a extracção das taxas e se há IVA não dedutível.",
        ("Rever a classificação do IVA por taxa",),
    ),
    "vat_standard": (
        "O IVA à taxa normal (23%) difere. Pode haver IVA classificado numa taxa errada.",
        ("Rever a classificação do IVA por taxa",),
    ),
    "vat_intermediate": (
        "O IVA à taxa intermédia (13%) difere. Pode haver IVA classificado numa taxa errada.",
        ("Rever a classificação do IVA por taxa",),
    ),
    "vat_reduced": (
        "O IVA à taxa reduzida (6%) difere. Pode haver IVA classificado numa taxa errada.",
        ("Rever a classificação do IVA por taxa",),
    ),
    "gross_amount": (
        "O rendimento bruto difere. Confirme se todos os recibos do beneficiário foram registados.",
        ("Comparar os recibos verdes do NIF com o Portal das Finanças",),
    ),
    "withholding_amount": (
        "A retenção na fonte difere. Verifique a taxa de retenção aplicada e a categoria de rendimento.",
        ("Confirmar a taxa de retenção e a categoria",),
    ),
    "net_amount": (
        "O valor líquido difere. Normalmente resulta de diferenças no bruto ou na retenção.",
        ("Rever o bruto e a retenção do NIF",),
    ),
}

_JSON_SCHEMA = {
    "name": "tax_discrepancy_annotation",
    "schema": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "Explicação em português europeu (1-2 frases).",
            },
            "actions": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Passos de correcção para o contabilista, por ordem.",
            },
            "confidence": {
                "type": "number",
                "description": "Confidence score between 0 and 1.",
            },
        },
        "required": ["summary", "actions", "confidence"],
        "additionalProperties": False,
    },
}


class StructuredClient(Protocol):
    def request(self, *, messages: list[dict[str, Any]], schema: dict[str, Any]) -> Dict[str, Any] | None:
        ...


@dataclass(frozen=True)
class LLMConfig:
    """Runtime configuration for the LLM integration."""

    model: str
    temperature: float
    api_key: str | None

    @classmethod
    def from_env(cls) -> "LLMConfig":
        model = os.getenv("TAXRECON_OPENAI_MODEL", "gpt-4o-mini")
        temperature = float(os.getenv("TAXRECON_OPENAI_TEMPERATURE", "0.2"))
        api_key = os.getenv("TAXRECON_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY")
        return cls(model=model, temperature=temperature, api_key=api_key)


class OpenAIStructuredClient:
    """Adapter that asks the Responses API for schema-constrained JSON."""

    def __init__(self, config: LLMConfig, client: Any | None = None) -> None:
        self._config = config
        self._client = client or OpenAI(api_key=config.api_key)

    def request(self, *, messages: list[dict[str, Any]], schema: dict[str, Any]) -> Dict[str, Any] | None:
        response = self._client.responses.create(
            model=self._config.model,
            temperature=self._config.temperature,
            input=messages,
            text={
                "format": {
                    "type": "json_schema",
                    "name": schema["name"],
                    "schema": schema["schema"],
                    "strict": True,
                }
            },
        )
        return _extract_json_payload(response)


def _extract_json_payload(response: Any) -> Dict[str, Any] | None:
    """Normalise the OpenAI client response into a Python dictionary."""

    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            LOGGER.warning("LLM response could not be parsed as JSON. Falling back to rules.")
            return None

    outputs = getattr(response, "output", None) or getattr(response, "outputs", None)
    if not outputs:
        # Older SDKs use `choices`
        outputs = getattr(response, "choices", None)
    if not outputs:
        return None

    for block in outputs:
        content = getattr(block, "content", None)
        if content is None and hasattr(block, "message"):
            content = getattr(block.message, "content", None)
        candidates = content if isinstance(content, list) else [block]
        for item in candidates:
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            if not text:
                continue
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                continue

    LOGGER.warning("LLM response could not be parsed as JSON. Falling back to rules.")
    return None


def _serialise_discrepancy(discrepancy: Discrepancy) -> dict[str, Any]:
    return {
        "nif": discrepancy.nif,
        "name": discrepancy.name,
        "field": discrepancy.label,
        "excel_value": float(discrepancy.excel_value),
        "system_value": float(discrepancy.system_value),
        "delta": float(discrepancy.delta),
        "severity": discrepancy.severity,
    }


def _fallback_annotation(discrepancy: Discrepancy) -> DiscrepancyAnnotation:
    message, actions = FIELD_MESSAGES.get(
        discrepancy.field,
        ("Diferença inesperada. Reveja o registo manualmente.", ()),
    )
    explanation = (
        f"{message} (NIF {discrepancy.nif}: Excel {discrepancy.excel_value:.2f} EUR, "
        f"sistema {discrepancy.system_value:.2f} EUR, diferença {discrepancy.delta:.2f} EUR)."
    )
    return DiscrepancyAnnotation(explanation=explanation, actions=tuple(actions), source="rule")


class DiscrepancyAnnotationService:
    """Explains discrepancies with an LLM, falling back to fixed messages per field."""

    def __init__(self, config: LLMConfig, client: StructuredClient | None) -> None:
        self._config = config
        self._client = client

    @classmethod
    def from_env(cls) -> "DiscrepancyAnnotationService":
        config = LLMConfig.from_env()
        client = OpenAIStructuredClient(config) if config.api_key else None
        return cls(config=config, client=client)

    def annotate(self, discrepancy: Discrepancy) -> DiscrepancyAnnotation:
        if self._client is None:
            return _fallback_annotation(discrepancy)

        messages = [
            {
                "role": "system",
                "content": (
                    "És um contabilista certificado português que revê reconciliações de IVA "
                    "e da declaração Modelo 10."
                ),
            },
            {
                "role": "user",
                "content": [
                    {
                        "type": "input_text",
                        "text": (
                            "Explica a diferença de reconciliação e sugere como corrigir. "
                            "Responde em JSON segundo o schema fornecido."
                        ),
                    },
                    {"type": "input_text", "text": json.dumps(_serialise_discrepancy(discrepancy), indent=2)},
                ],
            },
        ]

        try:
            payload = self._client.request(messages=messages, schema=_JSON_SCHEMA)
        except Exception as exc:  # pragma: no cover - network/runtime failure
            LOGGER.warning("LLM annotation failed; using rule-based fallback: %s", exc)
            return _fallback_annotation(discrepancy)

        if not payload or not str(payload.get("summary") or "").strip():
            fallback = _fallback_annotation(discrepancy)
            if payload and payload.get("actions"):
                return replace(fallback, actions=_clean_actions(payload.get("actions")))
            return fallback

        confidence = payload.get("confidence")
        return DiscrepancyAnnotation(
            explanation=str(payload["summary"]).strip(),
            actions=_clean_actions(payload.get("actions")),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
            source="openai",
            raw_response=payload,
        )


def _clean_actions(actions: Any) -> tuple[str, ...]:
    if isinstance(actions, Iterable) and not isinstance(actions, (str, bytes)):
        return tuple(action for action in actions if isinstance(action, str))
    return ()


_client_override: Optional[StructuredClient] = None


def set_structured_client_for_testing(client: Optional[StructuredClient]) -> None:
    """Route annotations through ``client`` (``None`` restores the environment setup)."""

    global _client_override
    _client_override = client
    _service.cache_clear()


@lru_cache(maxsize=1)
def _service() -> DiscrepancyAnnotationService:
    if _client_override is not None:
        return DiscrepancyAnnotationService(config=LLMConfig.from_env(), client=_client_override)
    return DiscrepancyAnnotationService.from_env()


def annotate_discrepancy(discrepancy: Discrepancy) -> DiscrepancyAnnotation:
    """Return an explanation and suggested actions for one discrepancy."""

    return _service().annotate(discrepancy)


def annotate_discrepancies(discrepancies: Iterable[Discrepancy]) -> list[Discrepancy]:
    annotated = []
    for discrepancy in discrepancies:
        annotation = annotate_discrepancy(discrepancy)
        annotated.append(
            replace(
                discrepancy,
                explanation=annotation.explanation,
                actions=annotation.actions,
                annotation_source=annotation.source,
            )
        )
    return annotated
