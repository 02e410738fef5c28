"""Portuguese taxpayer number (NIF) helpers."""
from __future__ import annotations

import re
from typing import Optional, Tuple

_WEIGHTS = (9, 8, 7, 6, 5, 4, 3, 2)
_VALID_FIRST_DIGITS = frozenset("12356789")

_NIF_TYPES = {
    "1": "Pessoa Singular",
    "2": "Pessoa Singular",
    "3": "Pessoa Singular",
    "5": "Pessoa Colectiva",
    "6": "Organismo Público",
    "7": "Herança Indivisa / Não Residente",
    "8": "Empresário Individual",
    "9": "Pessoa Colectiva Irregular",
}


def clean_nif(raw: object) -> str:
    """Keep only the digits of a NIF cell (spreadsheets often hold ints or ``PT`` prefixes)."""

    if raw is None:
        return ""
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    return re.sub(r"\D", "", str(raw))


def is_blank_nif(nif: str) -> bool:
    return not nif or set(nif) == {"0"}


def validate_nif(nif: str) -> Tuple[bool, Optional[str]]:
    """Check length, leading digit and the mod-11 control digit."""

    if not re.fullmatch(r"\d{9}", nif):
        return False, "NIF deve ter exactamente 9 dígitos"
    if nif[0] not in _VALID_FIRST_DIGITS:
        return False, "Primeiro dígito do NIF inválido"

    remainder = sum(int(digit) * weight for digit, weight in zip(nif, _WEIGHTS)) % 11
    check_digit = 0 if remainder < 2 else 11 - remainder
    if check_digit != int(nif[8]):
        return False, "Dígito de controlo inválido"
    return True, None


def nif_type(nif: str) -> str:
    return _NIF_TYPES.get(nif[:1], "Desconhecido")
