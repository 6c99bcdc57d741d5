"""Spanish number words to integers (for "SON: ... CON 90/100 SOLES")."""

from __future__ import annotations

import logging
import re
import unicodedata

logger = logging.getLogger(__name__)

_UNITS = {
    "cero": 0,
    "un": 1,
    "uno": 1,
    "una": 1,
    "dos": 2,
    "tres": 3,
    "cuatro": 4,
    "cinco": 5,
    "seis": 6,
    "siete": 7,
    "ocho": 8,
    "nueve": 9,
    "diez": 10,
    "once": 11,
    "doce": 12,
    "trece": 13,
    "catorce": 14,
    "quince": 15,
    "dieciseis": 16,
    "diecisiete": 17,
    "dieciocho": 18,
    "diecinueve": 19,
    "veinte": 20,
    "veintiun": 21,
    "veintiuno": 21,
    "veintiuna": 21,
    "veintidos": 22,
    "veintitres": 23,
    "veinticuatro": 24,
    "veinticinco": 25,
    "veintiseis": 26,
    "veintisiete": 27,
    "veintiocho": 28,
    "veintinueve": 29,
}

_TENS = {
    "treinta": 30,
    "cuarenta": 40,
    "cincuenta": 50,
    "sesenta": 60,
    "setenta": 70,
    "ochenta": 80,
    "noventa": 90,
}

_HUNDREDS = {
    "cien": 100,
    "ciento": 100,
    "doscientos": 200,
    "doscientas": 200,
    "trescientos": 300,
    "trescientas": 300,
    "cuatrocientos": 400,
    "cuatrocientas": 400,
    "quinientos": 500,
    "quinientas": 500,
    "seiscientos": 600,
    "seiscientas": 600,
    "setecientos": 700,
    "setecientas": 700,
    "ochocientos": 800,
    "ochocientas": 800,
    "novecientos": 900,
    "novecientas": 900,
}

_CONNECTORS = frozenset({"y", "con"})


def _normalize(phrase: str) -> str:
    decomposed = unicodedata.normalize("NFD", phrase.lower())
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn")


def words_to_number(phrase: str | None) -> int | None:
    """Convert a Spanish number phrase to an integer.

    Units, tens and hundreds add into an accumulator. ``mil`` multiplies the
    accumulator (1 when empty) and flushes it into the result; ``millon`` /
    ``millones`` do the same with a factor of a million. Amounts already
    flushed into the result are not rescaled.

    Args:
        phrase: e.g. ``"ciento veinte"`` or ``"DOS MIL QUINIENTOS"``.

    Returns:
        The integer value, or None when no number word was recognised.
    """
    if not phrase:
        return None

    tokens = re.findall(r"[a-z]+", _normalize(phrase))
    result = 0
    acc = 0
    recognised = False

    for token in tokens:
        if token in _CONNECTORS:
            continue
        if token in _UNITS:
            acc += _UNITS[token]
        elif token in _TENS:
            acc += _TENS[token]
        elif token in _HUNDREDS:
            acc += _HUNDREDS[token]
        elif token.startswith("veinti") and token[6:] in _UNITS:
            acc += 20 + _UNITS[token[6:]]
        elif token == "mil":
            result += (acc or 1) * 1000
            acc = 0
        elif token in ("millon", "millones"):
            result += (acc or 1) * 1_000_000
            acc = 0
        else:
            logger.debug("Palabra numérica desconocida ignorada: %r", token)
            continue
        recognised = True

    if not recognised:
        return None
    return result + acc
