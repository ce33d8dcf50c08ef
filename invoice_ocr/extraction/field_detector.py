"""Invoice field detection over layout chunks.

Runs one detector per field slot (invoice number, buyer/seller tax IDs,
items table, sales/tax/total amounts, date, buyer/seller names). Each
detector turns chunk text into candidates and keeps the best one according
to its list of weighted scoring rules. Detected fields can then be written
back onto the chunks they came from with :meth:`FieldDetector.annotate_chunks`.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any

from invoice_ocr.extraction.patterns import (
    INVOICE_NUMBER_RE,
    amount_after_keyword,
    extract_amount,
    find_tax_ids,
    is_valid_tax_id,
    item_name,
)
from invoice_ocr.extraction.scoring import (
    Candidate,
    Scorer,
    chunk_ocr_confidence,
    in_leading_fraction,
    in_middle_band,
    score_and_pick_best,
    score_candidate,
    text_contains_any,
)
from invoice_ocr.ocr.layout_analyzer import Chunk
from invoice_ocr.ocr.tesseract_engine import OCRLine
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.utils.serialization import to_plain

logger = get_logger(__name__)


class FieldType(StrEnum):
    """Semantic field slots of an invoice."""

    INVOICE_NUMBER = "INVOICE_NUMBER"
    TAX_ID_BUYER = "TAX_ID_BUYER"
    TAX_ID_SELLER = "TAX_ID_SELLER"
    ITEMS_TABLE = "ITEMS_TABLE"
    SALES_AMOUNT = "SALES_AMOUNT"
    TAX_AMOUNT = "TAX_AMOUNT"
    TOTAL_AMOUNT = "TOTAL_AMOUNT"
    DATE = "DATE"
    SELLER_NAME = "SELLER_NAME"
    BUYER_NAME = "BUYER_NAME"
    OTHER = "OTHER"


# Lowest priority first; a later entry overwrites an earlier one when two
# fields come from the same chunk.
ANNOTATION_PRIORITY: list[FieldType] = [
    FieldType.BUYER_NAME,
    FieldType.SELLER_NAME,
    FieldType.ITEMS_TABLE,
    FieldType.DATE,
    FieldType.SALES_AMOUNT,
    FieldType.TAX_AMOUNT,
    FieldType.TOTAL_AMOUNT,
    FieldType.TAX_ID_SELLER,
    FieldType.TAX_ID_BUYER,
    FieldType.INVOICE_NUMBER,
]

_INVOICE_PATTERNS: list[re.Pattern[str]] = [
    INVOICE_NUMBER_RE,
    re.compile(r"發票[號号]碼?\s*[:：]?\s*([A-Z]{2}[-\s]?\d{8})(?!\d)"),
]
_INVOICE_LABEL_RE = re.compile(r"發票[號号]")

_TAX_ID_LABEL_RE = re.compile(r"統[一编編]|稅籍")
_TAX_ID_NOISE_RE = re.compile(
    r"(?:統[一编編]\s*[編编號号碼码]*|統編|稅籍\s*[編编號号]*)\s*[:：]?\s*\d{8}|\d{8}"
)

_DATE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(?<!\d)(\d{4})[-/年](\d{1,2})[-/月](\d{1,2})日?"),
    re.compile(r"(?<!\d)(\d{3})[-/年](\d{1,2})[-/月](\d{1,2})日?"),
]
_DATE_LABEL_RE = re.compile(r"日期|開立|开立")
_ROC_YEAR_OFFSET = 1911

_NAME_SEPARATOR_RE = re.compile(r"[:：]")

DEFAULT_AMOUNT_KEYWORDS: dict[str, list[str]] = {
    "sales": ["銷售額", "小計", "未稅金額", "税前金额"],
    "tax": ["稅額", "營業稅", "增值稅", "税额"],
    "total": ["總計", "合計", "總額", "应付金额", "總金額"],
}
DEFAULT_BUYER_KEYWORDS = ["買方", "買受人", "购方", "客户"]
DEFAULT_SELLER_KEYWORDS = ["賣方", "销方", "供应商", "開立人"]
DEFAULT_TABLE_KEYWORDS = ["品名", "數量", "單價", "金額", "小計", "项目", "数量"]

_AMOUNT_SLOTS: dict[str, tuple[FieldType, float]] = {
    "sales": (FieldType.SALES_AMOUNT, 0.8),
    "tax": (FieldType.TAX_AMOUNT, 0.8),
    "total": (FieldType.TOTAL_AMOUNT, 0.9),
}
_CROSS_CHECKED_CONFIDENCE = 0.95
_NAME_CONFIDENCE = 0.7
UNKNOWN_ITEM_NAME = "未知商品"


@dataclass(frozen=True)
class FieldMatch:
    """The winning value for one field slot and where it came from."""

    value: Any
    chunk_id: str
    confidence: float
    field_type: FieldType
    raw_value: str | None = None
    keyword: str | None = None


@dataclass(frozen=True)
class LineItem:
    """One row parsed out of the items table."""

    name: str
    amount: Decimal
    raw_text: str
    confidence: float
    needs_review: bool = False


@dataclass(frozen=True)
class TaxIds:
    buyer: FieldMatch | None = None
    seller: FieldMatch | None = None
    all: list[FieldMatch] = field(default_factory=list)


@dataclass(frozen=True)
class Amounts:
    sales: FieldMatch | None = None
    tax: FieldMatch | None = None
    total: FieldMatch | None = None


@dataclass(frozen=True)
class Names:
    buyer: FieldMatch | None = None
    seller: FieldMatch | None = None


@dataclass(frozen=True)
class FieldRecord:
    """Every field slot detected in one document. All slots are optional."""

    invoice_number: FieldMatch | None = None
    tax_ids: TaxIds = field(default_factory=TaxIds)
    items_table: FieldMatch | None = None
    amounts: Amounts = field(default_factory=Amounts)
    date: FieldMatch | None = None
    names: Names = field(default_factory=Names)
    overall_confidence: float = 0.0

    @property
    def items(self) -> list[LineItem]:
        return list(self.items_table.value) if self.items_table else []

    def detected(self) -> list[FieldMatch]:
        """All detected slot winners, in annotation priority order."""
        by_type = {
            FieldType.INVOICE_NUMBER: self.invoice_number,
            FieldType.TAX_ID_BUYER: self.tax_ids.buyer,
            FieldType.TAX_ID_SELLER: self.tax_ids.seller,
            FieldType.ITEMS_TABLE: self.items_table,
            FieldType.SALES_AMOUNT: self.amounts.sales,
            FieldType.TAX_AMOUNT: self.amounts.tax,
            FieldType.TOTAL_AMOUNT: self.amounts.total,
            FieldType.DATE: self.date,
            FieldType.BUYER_NAME: self.names.buyer,
            FieldType.SELLER_NAME: self.names.seller,
        }
        return [by_type[t] for t in ANNOTATION_PRIORITY if by_type[t] is not None]

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


def match_invoice_number(text: str) -> tuple[str, str] | None:
    """Return ``(normalized, raw)`` for the first invoice number in ``text``."""
    for pattern in _INVOICE_PATTERNS:
        match = pattern.search(text)
        if match:
            raw = match.group(1) if match.groups() else match.group(0)
            return re.sub(r"[-\s]", "", raw), raw
    return None


class FieldDetector:
    """Rule-based detector for invoice fields.

    Args:
        amount_keywords: Keywords per amount slot (``sales``, ``tax``,
            ``total``).
        buyer_keywords: Labels marking the buyer side.
        seller_keywords: Labels marking the seller side.
        table_keywords: Column headers typical of an items table.
    """

    def __init__(
        self,
        amount_keywords: dict[str, list[str]] | None = None,
        buyer_keywords: list[str] | None = None,
        seller_keywords: list[str] | None = None,
        table_keywords: list[str] | None = None,
    ) -> None:
        self.amount_keywords = amount_keywords or DEFAULT_AMOUNT_KEYWORDS
        self.buyer_keywords = buyer_keywords or DEFAULT_BUYER_KEYWORDS
        self.seller_keywords = seller_keywords or DEFAULT_SELLER_KEYWORDS
        self.table_keywords = table_keywords or DEFAULT_TABLE_KEYWORDS

        self.invoice_scorers = [
            Scorer("leading_position", 0.3, in_leading_fraction(0.3)),
            Scorer("label", 0.2, lambda c: bool(_INVOICE_LABEL_RE.search(c.text))),
            Scorer("ocr_confidence", 0.1, chunk_ocr_confidence),
        ]
        self.tax_id_scorers = [
            Scorer("role_keyword", 0.3, lambda c: c.extra["role_source"] == "keyword"),
            Scorer("role_position", 0.1, lambda c: c.extra["role_source"] == "position"),
            Scorer("label", 0.2, lambda c: bool(_TAX_ID_LABEL_RE.search(c.text))),
        ]
        self.table_scorers = [
            Scorer("numeric_rows", 0.3, self._has_numeric_rows),
            Scorer(
                "aligned",
                0.2,
                lambda c: c.chunk.alignment is not None
                and c.chunk.alignment.confidence > 0.7,
            ),
            Scorer("header_keywords", 0.3, text_contains_any(self.table_keywords)),
            Scorer("middle_position", 0.2, in_middle_band(0.2, 0.8)),
        ]
        self.date_scorers = [
            Scorer("leading_position", 0.3, in_leading_fraction(0.3)),
            Scorer("label", 0.2, lambda c: bool(_DATE_LABEL_RE.search(c.text))),
        ]

    def detect_all_fields(
        self, chunks: list[Chunk], lines: list[OCRLine] | None = None
    ) -> FieldRecord:
        """Run every field detector over the chunks of one document.

        Args:
            chunks: Chunks produced by the layout analyzer.
            lines: The OCR lines the chunks were built from. Used to read an
                amount from the line after a label when the label ends its
                chunk.

        Returns:
            The detected fields and the overall confidence.
        """
        lines = lines or []
        record = FieldRecord(
            invoice_number=self.detect_invoice_number(chunks),
            tax_ids=self.detect_tax_ids(chunks),
            items_table=self.detect_items_table(chunks),
            amounts=self.detect_amounts(chunks, lines),
            date=self.detect_date(chunks),
            names=self.detect_names(chunks),
        )
        record = replace(record, overall_confidence=self.calculate_overall_confidence(record))
        logger.info(
            "Detected %d fields (overall confidence %.2f)",
            len(record.detected()),
            record.overall_confidence,
        )
        return record

    def detect_invoice_number(self, chunks: list[Chunk]) -> FieldMatch | None:
        candidates: list[Candidate] = []
        for index, chunk in enumerate(chunks):
            found = match_invoice_number(chunk.text)
            if found is None:
                continue
            value, raw = found
            candidates.append(
                Candidate(
                    value=value,
                    chunk=chunk,
                    chunk_index=index,
                    chunk_count=len(chunks),
                    raw_value=raw,
                )
            )

        best = score_and_pick_best(candidates, self.invoice_scorers, base=0.5)
        if best is None:
            return None
        logger.debug("Invoice number %s scored %s", best.candidate.value, best.breakdown)
        return FieldMatch(
            value=best.candidate.value,
            raw_value=best.candidate.raw_value,
            chunk_id=best.candidate.chunk.id,
            confidence=best.confidence,
            field_type=FieldType.INVOICE_NUMBER,
        )

    def detect_tax_ids(self, chunks: list[Chunk]) -> TaxIds:
        """Find 8-digit tax IDs and split them into buyer and seller.

        The role comes from a buyer/seller keyword on the same line, then in
        the same chunk; without a keyword, chunks before the 40% mark are
        taken as seller and later ones as buyer.
        """
        candidates: list[Candidate] = []
        for index, chunk in enumerate(chunks):
            seen: set[str] = set()
            for line in chunk.lines:
                for match in find_tax_ids(line.text):
                    tax_id = match.group(0)
                    if tax_id in seen or not is_valid_tax_id(tax_id):
                        continue
                    seen.add(tax_id)
                    role, source = self._tax_id_role(line.text, chunk.text, index, len(chunks))
                    candidates.append(
                        Candidate(
                            value=tax_id,
                            chunk=chunk,
                            chunk_index=index,
                            chunk_count=len(chunks),
                            raw_value=line.text,
                            extra={"role": role, "role_source": source},
                        )
                    )

        matches: list[FieldMatch] = []
        for candidate in candidates:
            scored = score_candidate(candidate, self.tax_id_scorers, base=0.5)
            matches.append(
                FieldMatch(
                    value=candidate.value,
                    raw_value=candidate.raw_value,
                    chunk_id=candidate.chunk.id,
                    confidence=scored.confidence,
                    field_type=candidate.extra["role"],
                )
            )

        def pick(role: FieldType) -> FieldMatch | None:
            best: FieldMatch | None = None
            for match in matches:
                if match.field_type == role and (
                    best is None or match.confidence > best.confidence
                ):
                    best = match
            return best

        return TaxIds(
            buyer=pick(FieldType.TAX_ID_BUYER),
            seller=pick(FieldType.TAX_ID_SELLER),
            all=matches,
        )

    def _tax_id_role(
        self, line_text: str, chunk_text: str, index: int, count: int
    ) -> tuple[FieldType, str]:
        for text in (line_text, chunk_text):
            if any(kw in text for kw in self.buyer_keywords):
                return FieldType.TAX_ID_BUYER, "keyword"
            if any(kw in text for kw in self.seller_keywords):
                return FieldType.TAX_ID_SELLER, "keyword"
        if index < count * 0.4:
            return FieldType.TAX_ID_SELLER, "position"
        return FieldType.TAX_ID_BUYER, "position"

    @staticmethod
    def _has_numeric_rows(candidate: Candidate) -> bool:
        return len(re.findall(r"\d+", candidate.text)) >= len(candidate.chunk.lines)

    def detect_items_table(self, chunks: list[Chunk]) -> FieldMatch | None:
        candidates = [
            Candidate(value=None, chunk=chunk, chunk_index=index, chunk_count=len(chunks))
            for index, chunk in enumerate(chunks)
            if len(chunk.lines) >= 2
        ]
        best = score_and_pick_best(candidates, self.table_scorers)
        if best is None:
            return None
        chunk = best.candidate.chunk
        return FieldMatch(
            value=self.parse_table_items(chunk),
            raw_value=chunk.text,
            chunk_id=chunk.id,
            confidence=best.confidence,
            field_type=FieldType.ITEMS_TABLE,
        )

    @staticmethod
    def parse_table_items(chunk: Chunk) -> list[LineItem]:
        """Read one item per line that carries an amount."""
        items: list[LineItem] = []
        for line in chunk.lines:
            amount = extract_amount(line.text)
            if amount is None:
                continue
            name = item_name(line.text)
            items.append(
                LineItem(
                    name=name or UNKNOWN_ITEM_NAME,
                    amount=amount,
                    raw_text=line.text,
                    confidence=line.confidence or 0.5,
                    needs_review=line.needs_review,
                )
            )
        return items

    def detect_amounts(
        self, chunks: list[Chunk], lines: list[OCRLine] | None = None
    ) -> Amounts:
        """Fill the sales, tax and total slots from labelled amounts.

        A later candidate replaces an earlier one unless its amount is zero.
        When all three are found and ``sales + tax`` matches ``total``
        within one unit, all three confidences are raised to 0.95.
        """
        lines = lines or []
        slots: dict[str, FieldMatch | None] = {slot: None for slot in _AMOUNT_SLOTS}

        for chunk in chunks:
            for slot, (field_type, confidence) in _AMOUNT_SLOTS.items():
                for keyword in self.amount_keywords.get(slot, []):
                    if keyword not in chunk.text:
                        continue
                    found = self._labelled_amount(chunk, keyword, lines)
                    if found is None:
                        continue
                    amount, raw_text = found
                    if slots[slot] is None or amount != 0:
                        slots[slot] = FieldMatch(
                            value=amount,
                            raw_value=raw_text,
                            chunk_id=chunk.id,
                            confidence=confidence,
                            field_type=field_type,
                            keyword=keyword,
                        )

        sales, tax, total = slots["sales"], slots["tax"], slots["total"]
        if sales and tax and total:
            if abs(sales.value + tax.value - total.value) < 1:
                logger.debug(
                    "Amounts cross-check: %s + %s = %s", sales.value, tax.value, total.value
                )
                sales, tax, total = (
                    replace(m, confidence=_CROSS_CHECKED_CONFIDENCE)
                    for m in (sales, tax, total)
                )
        return Amounts(sales=sales, tax=tax, total=total)

    @staticmethod
    def _labelled_amount(
        chunk: Chunk, keyword: str, lines: list[OCRLine]
    ) -> tuple[Decimal, str] | None:
        for offset, line in enumerate(chunk.lines):
            if keyword not in line.text:
                continue
            amount = amount_after_keyword(line.text, keyword)
            if amount is not None:
                return amount, line.text
            if offset + 1 < len(chunk.lines):
                following = chunk.lines[offset + 1].text
            else:
                global_index = chunk.start_line_index + offset + 1
                following = lines[global_index].text if global_index < len(lines) else ""
            amount = extract_amount(following)
            if amount is not None:
                return amount, f"{line.text} {following}"
        return None

    def detect_date(self, chunks: list[Chunk]) -> FieldMatch | None:
        """Find an issue date; ROC-calendar years are converted by +1911."""
        candidates: list[Candidate] = []
        for index, chunk in enumerate(chunks):
            for pattern in _DATE_PATTERNS:
                match = pattern.search(chunk.text)
                if not match:
                    continue
                year, month, day = (int(g) for g in match.groups())
                if year < 1000:
                    year += _ROC_YEAR_OFFSET
                try:
                    parsed = date(year, month, day)
                except ValueError:
                    logger.debug("Ignoring impossible date %r", match.group(0))
                    continue
                candidates.append(
                    Candidate(
                        value=parsed.isoformat(),
                        chunk=chunk,
                        chunk_index=index,
                        chunk_count=len(chunks),
                        raw_value=match.group(0),
                    )
                )

        best = score_and_pick_best(candidates, self.date_scorers, base=0.5)
        if best is None:
            return None
        return FieldMatch(
            value=best.candidate.value,
            raw_value=best.candidate.raw_value,
            chunk_id=best.candidate.chunk.id,
            confidence=best.confidence,
            field_type=FieldType.DATE,
        )

    def detect_names(self, chunks: list[Chunk]) -> Names:
        return Names(
            buyer=self._first_name(chunks, self.buyer_keywords, FieldType.BUYER_NAME),
            seller=self._first_name(chunks, self.seller_keywords, FieldType.SELLER_NAME),
        )

    @staticmethod
    def _first_name(
        chunks: list[Chunk], keywords: list[str], field_type: FieldType
    ) -> FieldMatch | None:
        for chunk in chunks:
            for line in chunk.lines:
                for keyword in keywords:
                    if keyword not in line.text:
                        continue
                    name = line.text.replace(keyword, "", 1)
                    name = _TAX_ID_NOISE_RE.sub("", name)
                    name = _NAME_SEPARATOR_RE.sub("", name).strip()
                    if name:
                        return FieldMatch(
                            value=name,
                            raw_value=line.text,
                            chunk_id=chunk.id,
                            confidence=_NAME_CONFIDENCE,
                            field_type=field_type,
                            keyword=keyword,
                        )
        return None

    @staticmethod
    def calculate_overall_confidence(record: FieldRecord) -> float:
        """Mean confidence of invoice number, both tax IDs and the total."""
        found = [
            m.confidence
            for m in (
                record.invoice_number,
                record.tax_ids.buyer,
                record.tax_ids.seller,
                record.amounts.total,
            )
            if m is not None
        ]
        return sum(found) / len(found) if found else 0.0

    @staticmethod
    def annotate_chunks(chunks: list[Chunk], fields: FieldRecord) -> list[Chunk]:
        """Return copies of ``chunks`` tagged with the field each produced.

        Chunks that produced no field are tagged ``OTHER``. A chunk holds one
        field; when several come from the same chunk the one later in
        :data:`ANNOTATION_PRIORITY` wins.
        """
        annotated = [
            replace(chunk, field_type=FieldType.OTHER, field_info=None) for chunk in chunks
        ]
        positions = {chunk.id: i for i, chunk in enumerate(annotated)}
        for match in fields.detected():
            i = positions.get(match.chunk_id)
            if i is None:
                continue
            annotated[i] = replace(
                annotated[i], field_type=match.field_type, field_info=match
            )
        return annotated
