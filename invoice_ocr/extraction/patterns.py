"""Amount, tax-ID and invoice-number patterns shared by every extractor.

These are deliberately simple first-match heuristics: the order of
``AMOUNT_PATTERNS`` decides which number wins when a line carries several.
"""

import re
from decimal import Decimal, InvalidOperation

_NUMBER = r"\d[\d,]*(?:\.\d{1,2})?"

# Order matters: currency-marked amounts beat bare numbers.
AMOUNT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"NT\$?\s*({_NUMBER})", re.IGNORECASE),
    re.compile(rf"\$\s*({_NUMBER})"),
    re.compile(rf"({_NUMBER})\s*元"),
    re.compile(rf"(?:^|\s)({_NUMBER})(?=\s|$)"),
]

_AMOUNT_RESIDUE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"NT\$?\s*{_NUMBER}", re.IGNORECASE),
    re.compile(rf"\$\s*{_NUMBER}"),
    re.compile(rf"{_NUMBER}\s*元"),
]

INVOICE_NUMBER_RE = re.compile(r"(?<![A-Za-z])[A-Z]{2}[-\s]?\d{8}(?!\d)")
INVOICE_NO_STRICT_RE = re.compile(r"[A-Z]{2}\d{8}")
TAX_ID_RE = re.compile(r"(?<![A-Za-z\d])\d{8}(?!\d)")
# Serial forms whose digits are never a tax ID.
_INVOICE_SERIAL_RE = re.compile(r"[A-Z]{2}-?\d{8}(?!\d)")

_TRAILING_NUMBER_RE = re.compile(rf"\s*{_NUMBER}\s*$")
_TAX_ID_FORMAT_RE = re.compile(r"^\d{8}$")
_INVOICE_NO_FORMAT_RE = re.compile(r"^[A-Z]{2}\d{8}$")


def parse_amount(raw: str) -> Decimal | None:
    """Parse a number with optional thousands separators into a Decimal."""
    cleaned = raw.replace(",", "").strip()
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def extract_amount(text: str) -> Decimal | None:
    """Return the first amount found in ``text``, or ``None``.

    Tries ``NT$<num>``, ``$<num>``, ``<num>元`` and finally a bare
    whitespace-delimited number, in that order.
    """
    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            amount = parse_amount(match.group(1))
            if amount is not None:
                return amount
    return None


def amount_after_keyword(text: str, keyword: str) -> Decimal | None:
    """Extract the amount that follows ``keyword`` in ``text``.

    Falls back to the first amount anywhere in ``text`` when nothing
    follows the keyword, so a label written after its value still resolves.
    """
    index = text.find(keyword)
    if index != -1:
        amount = extract_amount(text[index + len(keyword) :])
        if amount is not None:
            return amount
    return extract_amount(text)


def strip_amounts(text: str) -> str:
    """Remove currency-marked amounts, leaving the descriptive residue."""
    for pattern in _AMOUNT_RESIDUE_PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def find_tax_ids(text: str) -> list[re.Match[str]]:
    """Every standalone 8-digit run in ``text`` outside an invoice serial.

    ``AB12345678`` and ``AB-12345678`` are invoice numbers, so their digits
    are skipped; a label such as ``Tax ID 12345678`` keeps its number.
    """
    serials = [match.span() for match in _INVOICE_SERIAL_RE.finditer(text)]
    return [
        match
        for match in TAX_ID_RE.finditer(text)
        if not any(start < match.end() and match.start() < end for start, end in serials)
    ]


def extract_tax_id(text: str) -> str | None:
    """Return the first standalone 8-digit run in ``text``."""
    matches = find_tax_ids(text)
    return matches[0].group(0) if matches else None


def extract_invoice_no(text: str) -> str | None:
    """Return the first ``[A-Z]{2}\\d{8}`` run in ``text``."""
    match = INVOICE_NO_STRICT_RE.search(text)
    return match.group(0) if match else None


def is_valid_tax_id(tax_id: str) -> bool:
    return bool(_TAX_ID_FORMAT_RE.match(tax_id))


def is_valid_invoice_no(invoice_no: str) -> bool:
    return bool(_INVOICE_NO_FORMAT_RE.match(invoice_no))


def item_name(text: str) -> str:
    """Descriptive part of an item line with its amount removed.

    Currency-marked amounts are stripped first; a line priced with a bare
    number loses its trailing figure instead.
    """
    name = strip_amounts(text)
    if name == text.strip():
        name = _TRAILING_NUMBER_RE.sub("", name)
    return name.strip()
