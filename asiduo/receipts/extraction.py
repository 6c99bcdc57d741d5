"""Rule-based extraction of receipt facts from OCR text.

Every field is read by an ordered tuple of rules. The first rule whose
pattern matches and whose parser yields a value wins; there is no scoring
across rules. Merchants can prepend their own patterns per field.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from .models import LineItem, ReceiptFacts, to_money
from .words import words_to_number

logger = logging.getLogger(__name__)
quality_logger = logging.getLogger("asiduo.receipts.data_quality")

_FLAGS = re.IGNORECASE | re.MULTILINE

# 4.90 / 4,90 / 1,234.50
_NUM = r"\d{1,3}(?:,\d{3})+\.\d{2}|\d+[.,]\d{2}"
_SOL = r"(?:S/\.?)?"

_MONTHS = {
    "ene": 1,
    "feb": 2,
    "mar": 3,
    "abr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "ago": 8,
    "set": 9,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dic": 12,
}

_BOILERPLATE = re.compile(
    r"^(?:R\.?U\.?C|FACTURA|BOLETA|TICKET|NOTA|FECHA|DIRECCI|CAJA|SERIE)",
    re.IGNORECASE,
)
_NOT_AN_ITEM = re.compile(
    r"^(?:TOTAL|SUB\s*TOTAL|IGV|DESCUENTO|IMPORTE|OP\.|OP\s|OPERACI|VALOR|GRAVAD|EXONERAD|"
    r"INAFECT|EFECTIVO|VUELTO|REDONDEO|CAMBIO|TARJETA|ICBPER|SON\b)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Rule:
    """A named pattern plus the parser that turns a match into a value."""

    name: str
    pattern: re.Pattern
    parse: Callable[[re.Match], Any]

    def apply(self, text: str) -> Any | None:
        for match in self.pattern.finditer(text):
            try:
                value = self.parse(match)
            except (ValueError, ArithmeticError):
                logger.debug("Regla %s: valor no interpretable %r", self.name, match.group(0))
                continue
            if value is not None:
                return value
        return None


def _group(match: re.Match) -> str:
    return (match.group(1) if match.re.groups else match.group(0)).strip()


# ── Parsers ────────────────────────────────────────────────


def parse_money(raw: str) -> Decimal | None:
    """Parse ``4.90``, ``4,90`` or ``1,234.50`` into a positive Decimal."""
    raw = raw.strip()
    if "," in raw and "." in raw:
        raw = raw.replace(",", "")
    else:
        raw = raw.replace(",", ".")
    try:
        value = to_money(Decimal(raw))
    except InvalidOperation:
        return None
    if value is None or value <= 0:
        return None
    return value


def _amount(match: re.Match) -> Decimal | None:
    found = re.search(_NUM, _group(match))
    return parse_money(found.group(0)) if found else None


def _tax_id(match: re.Match) -> str | None:
    digits = re.sub(r"\D", "", _group(match))
    return digits if len(digits) == 11 else None


_SERIES_RE = re.compile(
    r"\b([BFE])\s?((?=[A-Z]{0,2}\d)[A-Z0-9]{3})\s*-\s*(\d{4,8})\b", re.IGNORECASE
)


def normalize_invoice(raw: str) -> str | None:
    """Normalize an invoice number to ``SERIES-SEQUENCE`` upper case."""
    raw = raw.strip().upper()
    series = _SERIES_RE.search(raw)
    if series:
        return f"{series.group(1)}{series.group(2)}-{series.group(3)}".upper()
    compact = re.sub(r"\s+", "", raw).strip("-")
    if len(compact) < 4 or not re.search(r"\d", compact):
        return None
    return compact


def _invoice_series(match: re.Match) -> str:
    return f"{match.group(1)}{match.group(2)}-{match.group(3)}".upper()


def _invoice(match: re.Match) -> str | None:
    return normalize_invoice(_group(match))


def _text(match: re.Match) -> str | None:
    value = re.sub(r"\s+", " ", _group(match)).strip(" :-")
    return value or None


def _address(match: re.Match) -> str | None:
    value = _text(match)
    if value is None or value.upper() == "CAJA":
        return None
    if re.search(r"\bR\.?U\.?C\b|\bTOTAL\b", value, re.IGNORECASE):
        return None
    return value


def _year(raw: str) -> int:
    year = int(raw)
    return year + 2000 if year < 100 else year


def _numeric_date(match: re.Match) -> date:
    day, month, year = match.group(1), match.group(2), match.group(3)
    return date(_year(year), int(month), int(day))


def _iso_date(match: re.Match) -> date:
    return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))


def _month_date(match: re.Match) -> date | None:
    month = _MONTHS.get(match.group(2)[:3].lower())
    if month is None:
        return None
    return date(_year(match.group(3)), month, int(match.group(1)))


def _rule(name: str, pattern: str, parse: Callable[[re.Match], Any]) -> Rule:
    return Rule(name, re.compile(pattern, _FLAGS), parse)


_DMY = r"(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})\b"
_DMONTHY = r"(\d{1,2})\s+(?:DE\s+)?([A-Za-zÁÉÍÓÚáéíóú]{3,})\.?\s+(?:DE(?:L)?\s+)?(\d{4})"

DEFAULT_RULES: dict[str, tuple[Rule, ...]] = {
    "tax_id": (
        _rule("ruc_label", r"R\.?\s*U\.?\s*C\.?\s*(?:N[°ºO]?\.?)?\s*:?\s*(\d{11})\b", _tax_id),
        _rule("ruc_bare", r"\b((?:10|15|17|20)\d{9})\b", _tax_id),
    ),
    "amount": (
        _rule("importe_total", rf"IMPORTE\s+TOTAL\s*{_SOL}\s*:?\s*{_SOL}\s*({_NUM})", _amount),
        _rule("total_a_pagar", rf"TOTAL\s+A\s+PAGAR\s*{_SOL}\s*:?\s*{_SOL}\s*({_NUM})", _amount),
        _rule("total_soles", rf"TOTAL\s+SOLES\s*{_SOL}\s*:?\s*{_SOL}\s*({_NUM})", _amount),
        _rule("total_venta", rf"TOTAL\s+VENTA\s*:?\s*{_SOL}\s*({_NUM})", _amount),
        _rule("total_ticket", rf"TOTAL\s+DEL\s+TICKET\s*:?\s*{_SOL}\s*({_NUM})", _amount),
        _rule(
            "total",
            rf"^(?![^\n]*SUB[ \t.\-]*TOTAL)[^\n]*?\bTOTAL\s*:?\s*{_SOL}\s*:?\s*({_NUM})",
            _amount,
        ),
        _rule("importe", rf"\bIMPORTE\s*:?\s*{_SOL}\s*({_NUM})", _amount),
        _rule("soles", rf"S/\.?\s*({_NUM})\s*(?:SOLES|PEN)\b", _amount),
    ),
    "invoice_number": (
        _rule("nro_dcto", r"NRO\.?\s+DCTO\s*:?\s*([A-Z0-9]{4}\s*-\s*\d{1,8})", _invoice),
        Rule("series", _SERIES_RE, _invoice_series),
        _rule(
            "document_label",
            r"(?:FACTURA|BOLETA|TICKET|COMPROBANTE)[^\n]*?(?:N[°ºO]\.?|NRO\.?|#)\s*:?\s*([A-Z0-9][A-Z0-9\-]{3,})",
            _invoice,
        ),
        _rule("ticket", r"\bTICKET\s*:?\s*([A-Z0-9\-]{4,})", _invoice),
        _rule("documento", r"\bDOCUMENTO\s*:?\s*([A-Z0-9\-]{4,})", _invoice),
    ),
    "merchant_name": (
        _rule("razon_social", r"RAZ[OÓ]N\s+SOCIAL\s*:?\s*([^\n]+)", _text),
        _rule("nombre_comercial", r"NOMBRE\s+COMERCIAL\s*:?\s*([^\n]+)", _text),
        _rule("denominacion", r"DENOMINACI[OÓ]N\s*:?\s*([^\n]+)", _text),
    ),
    "address": (
        _rule("direccion", r"DIRECCI[OÓ]N\s*:?\s*([^\n]+)", _address),
        _rule("domicilio_fiscal", r"DOMICILIO\s+FISCAL\s*:?\s*([^\n]+)", _address),
        _rule("dir", r"\bDIR\.?\s*:\s*([^\n]+)", _address),
        _rule(
            "street",
            r"\b((?:AV|AVDA|JR|CALLE|CAL|URB|PSJE|PJE)\.?\s+[^\n]{4,})",
            _address,
        ),
    ),
    "vendor_name": (
        _rule("mozo", r"\bMOZO\s*:?\s*([^\n]+)", _text),
        _rule("vendedor", r"\bVENDEDOR\s*:?\s*([^\n]+)", _text),
        _rule("cajero", r"\bCAJERO\s*:?\s*([^\n]+)", _text),
        _rule("atendido_por", r"\bATENDIDO\s+POR\s*:?\s*([^\n]+)", _text),
        _rule("asesor", r"\bASESOR\s*:?\s*([^\n]+)", _text),
    ),
    "issued_date": (
        _rule("fecha_emision", rf"FECHA\s+DE\s+EMISI[OÓ]N\s*:?\s*{_DMY}", _numeric_date),
        _rule("fecha", rf"(?:FECHA|EMISI[OÓ]N|EMITIDO)\s*:?\s*{_DMY}", _numeric_date),
        _rule("fecha_mes", rf"(?:FECHA(?:\s+DE\s+EMISI[OÓ]N)?)\s*:?\s*{_DMONTHY}", _month_date),
        _rule("iso", r"\b(\d{4})-(\d{2})-(\d{2})\b", _iso_date),
        _rule("numeric", rf"\b{_DMY}", _numeric_date),
        _rule("month_name", rf"\b{_DMONTHY}", _month_date),
    ),
}

WORDS_RULE = _rule(
    "amount_in_words",
    r"\bSON\s*:?\s*([^\n]+?)\s+(?:Y|CON)\s+(\d{2})/100\s+SOLES",
    lambda m: m,
)

_ITEM_FULL = re.compile(rf"^(\d+(?:\.\d+)?)\s+(.+?)\s+({_NUM})\s+({_NUM})$")
_ITEM_SIMPLE = re.compile(rf"^([A-Za-z][A-Za-z0-9\s.]+?)\s+({_NUM})$")


def _date_from_text(raw: str) -> date | None:
    for rule in DEFAULT_RULES["issued_date"]:
        value = rule.apply(raw)
        if value is not None:
            return value
    return None


# Parsers used for per-merchant override patterns: they read group 1
# (or the whole match) as plain text.
_OVERRIDE_PARSERS: dict[str, Callable[[re.Match], Any]] = {
    "tax_id": _tax_id,
    "amount": _amount,
    "invoice_number": _invoice,
    "merchant_name": _text,
    "address": _address,
    "vendor_name": _text,
    "issued_date": lambda m: _date_from_text(_group(m)),
}


# ── Heuristics ─────────────────────────────────────────────


def _guess_merchant_name(lines: list[str], scan: int = 5) -> str | None:
    for line in lines[:scan]:
        line = line.strip()
        if len(line) > 3 and not _BOILERPLATE.match(line):
            return line
    return None


def _guess_address(lines: list[str]) -> str | None:
    for line in lines:
        line = line.strip()
        upper = line.upper()
        if len(line) <= 10 or "RUC" in upper or "TOTAL" in upper:
            continue
        if re.search(r"\bLIMA\b|\bSAN ISIDRO\b|\bMIRAFLORES\b|\bN[°º]\s*\d+", upper):
            return line
    return None


def extract_line_items(lines: list[str]) -> list[LineItem]:
    """Pick product lines (``qty desc unit subtotal`` or ``desc price``)."""
    items: list[LineItem] = []
    for line in lines:
        line = line.strip()
        full = _ITEM_FULL.match(line)
        if full:
            description = re.sub(r"\s+X\s*$", "", full.group(2).strip(), flags=re.IGNORECASE)
            if _NOT_AN_ITEM.match(description):
                continue
            items.append(
                LineItem(
                    description=description,
                    quantity=float(full.group(1)),
                    unit_price=parse_money(full.group(3)),
                    subtotal=parse_money(full.group(4)),
                )
            )
            continue
        simple = _ITEM_SIMPLE.match(line)
        if simple:
            description = simple.group(1).strip()
            price = parse_money(simple.group(2))
            if _NOT_AN_ITEM.match(description) or len(description) <= 3 or price is None:
                continue
            items.append(
                LineItem(description=description, unit_price=price, subtotal=price)
            )
    return items


# ── Extractor ──────────────────────────────────────────────


class TextExtractor:
    """Apply default and per-merchant rules to OCR text."""

    def __init__(
        self,
        rules: dict[str, tuple[Rule, ...]] | None = None,
        mismatch_tolerance: Decimal = Decimal("0.10"),
        name_scan_lines: int = 5,
    ) -> None:
        self._rules = dict(rules or DEFAULT_RULES)
        self._overrides: dict[str, dict[str, tuple[Rule, ...]]] = {}
        self._tolerance = mismatch_tolerance
        self._name_scan_lines = name_scan_lines

    def register(self, merchant_slug: str, overrides: dict[str, list[str]]) -> int:
        """Register per-merchant patterns, tried before the defaults.

        Invalid regexes and unknown fields are logged and skipped.

        Returns:
            Number of rules registered.
        """
        compiled: dict[str, tuple[Rule, ...]] = {}
        for field_name, patterns in (overrides or {}).items():
            parse = _OVERRIDE_PARSERS.get(field_name)
            if parse is None:
                logger.warning(
                    "Campo de extracción desconocido para %s: %s", merchant_slug, field_name
                )
                continue
            rules = []
            for index, pattern in enumerate(patterns):
                try:
                    regex = re.compile(pattern, _FLAGS)
                except re.error as exc:
                    logger.warning(
                        "Patrón inválido ignorado (%s.%s): %r: %s",
                        merchant_slug,
                        field_name,
                        pattern,
                        exc,
                    )
                    continue
                rules.append(Rule(f"{merchant_slug}:{field_name}:{index}", regex, parse))
            if rules:
                compiled[field_name] = tuple(rules)

        self._overrides[merchant_slug] = compiled
        return sum(len(r) for r in compiled.values())

    def has_overrides(self, merchant_slug: str | None) -> bool:
        return bool(merchant_slug and self._overrides.get(merchant_slug))

    def rules_for(self, field_name: str, merchant_slug: str | None = None) -> tuple[Rule, ...]:
        custom = self._overrides.get(merchant_slug, {}) if merchant_slug else {}
        return custom.get(field_name, ()) + self._rules.get(field_name, ())

    def _first(
        self, field_name: str, text: str, merchant_slug: str | None, facts: ReceiptFacts
    ) -> Any | None:
        for rule in self.rules_for(field_name, merchant_slug):
            value = rule.apply(text)
            if value is not None:
                facts.matched_rules[field_name] = rule.name
                return value
        return None

    def extract(self, text: str, merchant_slug: str | None = None) -> ReceiptFacts:
        """Extract receipt facts from OCR text. Never raises.

        Args:
            text: Raw OCR text (may be empty).
            merchant_slug: Apply this merchant's override rules first.

        Returns:
            ReceiptFacts; fields that could not be read are None.
        """
        facts = ReceiptFacts(raw_text=text or "")
        if not text or not text.strip():
            return facts

        lines = text.splitlines()

        facts.tax_id = self._first("tax_id", text, merchant_slug, facts)
        facts.invoice_number = self._first("invoice_number", text, merchant_slug, facts)
        facts.vendor_name = self._first("vendor_name", text, merchant_slug, facts)
        facts.issued_date = self._first("issued_date", text, merchant_slug, facts)

        facts.merchant_name_raw = self._first("merchant_name", text, merchant_slug, facts)
        if facts.merchant_name_raw is None:
            facts.merchant_name_raw = _guess_merchant_name(lines, self._name_scan_lines)
            if facts.merchant_name_raw:
                facts.matched_rules["merchant_name"] = "first_lines"

        facts.address_raw = self._first("address", text, merchant_slug, facts)
        if facts.address_raw is None:
            facts.address_raw = _guess_address(lines)
            if facts.address_raw:
                facts.matched_rules["address"] = "line_scan"

        self._extract_amount(text, merchant_slug, facts)
        facts.line_items = extract_line_items(lines)
        return facts

    def _extract_amount(
        self, text: str, merchant_slug: str | None, facts: ReceiptFacts
    ) -> None:
        numeric = self._first("amount", text, merchant_slug, facts)

        words_value = None
        words_match = WORDS_RULE.pattern.search(text)
        if words_match:
            facts.amount_in_words = words_match.group(0).strip()
            units = words_to_number(words_match.group(1))
            if units is not None:
                words_value = Decimal(units) + Decimal(words_match.group(2)) / 100
            else:
                quality_logger.warning(
                    "Monto en letras no interpretable: %r", facts.amount_in_words
                )

        if numeric is not None:
            facts.amount = numeric
            facts.amount_source = "numeric"
            if words_value is not None and abs(numeric - words_value) > self._tolerance:
                quality_logger.warning(
                    "Monto numérico %s difiere del monto en letras %s (RUC %s)",
                    numeric,
                    words_value,
                    facts.tax_id,
                )
        elif words_value is not None and words_value > 0:
            facts.amount = to_money(words_value)
            facts.amount_source = "words"
            facts.matched_rules["amount"] = WORDS_RULE.name


_default_extractor = TextExtractor()


def extract(text: str, merchant_slug: str | None = None) -> ReceiptFacts:
    """Extract receipt facts with the process-wide default extractor."""
    return _default_extractor.extract(text, merchant_slug)


def register_overrides(merchant_slug: str, overrides: dict[str, list[str]]) -> int:
    return _default_extractor.register(merchant_slug, overrides)
