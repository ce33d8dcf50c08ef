"""Line-oriented keyword extraction of amounts, items and identifiers.

Scans OCR lines for amount keywords (銷售額, 稅額, 合計, ...) and reads the
amount after each keyword, on the same line or the next one. Lines with an
amount but no keyword are taken as items. This is the shape the validator
consumes; :meth:`ExtractedData.from_field_record` converts layout-aware
field detection output into the same shape.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from invoice_ocr.extraction.field_detector import FieldMatch, FieldRecord, LineItem
from invoice_ocr.extraction.patterns import (
    amount_after_keyword,
    extract_amount,
    extract_invoice_no,
    extract_tax_id,
    is_valid_invoice_no,
    is_valid_tax_id,
    item_name,
)
from invoice_ocr.ocr.tesseract_engine import OCRLine, OCRResult
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.utils.serialization import to_plain

logger = get_logger(__name__)

DEFAULT_AMOUNT_KEYWORDS: list[str] = ["金額", "小計", "合計", "總計", "銷售額", "稅額"]


@dataclass(frozen=True)
class AmountEntry:
    """An amount read next to a keyword."""

    keyword: str
    amount: Decimal
    raw_text: str
    confidence: float
    needs_review: bool = False
    line_index: int | None = None


@dataclass(frozen=True)
class IdentifierEntry:
    """A tax ID or invoice number and the line it was read from."""

    value: str
    raw_text: str
    confidence: float
    needs_review: bool = False
    line_index: int | None = None


@dataclass(frozen=True)
class ExtractedData:
    amounts: list[AmountEntry] = field(default_factory=list)
    items: list[LineItem] = field(default_factory=list)
    tax_id: IdentifierEntry | None = None
    invoice_no: IdentifierEntry | None = None
    raw_lines: list[OCRLine] = field(default_factory=list)

    def amount_for(self, *keywords: str) -> AmountEntry | None:
        """First amount whose keyword is one of ``keywords``."""
        for entry in self.amounts:
            if entry.keyword in keywords:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        data = to_plain(self)
        data.pop("raw_lines")
        return data

    @classmethod
    def from_field_record(cls, record: FieldRecord) -> "ExtractedData":
        """Build validator input from layout-aware field detection.

        The sales, tax and total slots become 銷售額, 稅額 and 合計 entries.
        Table rows that are themselves the labelled sales, tax or total
        lines are not items. The buyer tax ID is used when present, else the
        seller's.
        """
        slots = [
            (keyword, match)
            for keyword, match in (
                ("銷售額", record.amounts.sales),
                ("稅額", record.amounts.tax),
                ("合計", record.amounts.total),
            )
            if match is not None
        ]
        amounts = [_amount_entry(keyword, match) for keyword, match in slots]
        summary_texts = [match.raw_value or "" for _, match in slots]
        items = [
            item
            for item in record.items
            if not any(item.raw_text in text for text in summary_texts)
        ]
        tax_match = record.tax_ids.buyer or record.tax_ids.seller
        return cls(
            amounts=amounts,
            items=items,
            tax_id=_identifier_entry(tax_match),
            invoice_no=_identifier_entry(record.invoice_number),
        )


def _amount_entry(keyword: str, match: FieldMatch) -> AmountEntry:
    return AmountEntry(
        keyword=keyword,
        amount=match.value,
        raw_text=match.raw_value or "",
        confidence=match.confidence,
        needs_review=match.value == 0,
    )


def _identifier_entry(match: FieldMatch | None) -> IdentifierEntry | None:
    if match is None:
        return None
    return IdentifierEntry(
        value=str(match.value),
        raw_text=match.raw_value or str(match.value),
        confidence=match.confidence,
    )


class RuleExtractor:
    """Keyword-driven extractor over the flat list of OCR lines.

    Args:
        keywords: Amount keywords. Defaults to 金額, 小計, 合計, 總計,
            銷售額 and 稅額.
    """

    def __init__(self, keywords: list[str] | None = None) -> None:
        self.keywords = list(keywords or DEFAULT_AMOUNT_KEYWORDS)

    def set_keywords(self, keywords: list[str]) -> None:
        self.keywords = list(keywords)

    def extract(self, ocr_result: OCRResult) -> ExtractedData:
        """Extract amounts, items, tax ID and invoice number.

        Args:
            ocr_result: OCR output of one page.

        Returns:
            The extracted data; missing identifiers are ``None``.
        """
        lines = list(ocr_result.lines or [])
        data = ExtractedData(
            amounts=self.extract_amounts(lines),
            items=self.extract_items(lines),
            tax_id=self._first_identifier(lines, extract_tax_id, is_valid_tax_id),
            invoice_no=self._first_identifier(
                lines, extract_invoice_no, is_valid_invoice_no
            ),
            raw_lines=lines,
        )
        logger.info(
            "Keyword extraction found %d amounts and %d items",
            len(data.amounts),
            len(data.items),
        )
        return data

    def extract_amounts(self, lines: list[OCRLine]) -> list[AmountEntry]:
        amounts: list[AmountEntry] = []
        for index, line in enumerate(lines):
            for keyword in self.keywords:
                if keyword not in line.text:
                    continue
                amount = amount_after_keyword(line.text, keyword)
                if amount is not None:
                    amounts.append(
                        AmountEntry(
                            keyword=keyword,
                            amount=amount,
                            raw_text=line.text,
                            confidence=line.confidence,
                            needs_review=line.needs_review or amount == 0,
                            line_index=index,
                        )
                    )
                    continue
                if index + 1 >= len(lines):
                    continue
                following = lines[index + 1]
                amount = extract_amount(following.text)
                if amount is not None:
                    amounts.append(
                        AmountEntry(
                            keyword=keyword,
                            amount=amount,
                            raw_text=f"{line.text} {following.text}",
                            confidence=min(line.confidence, following.confidence),
                            needs_review=line.needs_review or following.needs_review,
                            line_index=index,
                        )
                    )
        return amounts

    def extract_items(self, lines: list[OCRLine]) -> list[LineItem]:
        """Lines carrying an amount but none of the keywords."""
        items: list[LineItem] = []
        for line in lines:
            amount = extract_amount(line.text)
            if amount is None or any(kw in line.text for kw in self.keywords):
                continue
            name = item_name(line.text)
            if name:
                items.append(
                    LineItem(
                        name=name,
                        amount=amount,
                        raw_text=line.text,
                        confidence=line.confidence,
                        needs_review=line.needs_review,
                    )
                )
        return items

    @staticmethod
    def _first_identifier(lines, extract, is_valid) -> IdentifierEntry | None:
        for index, line in enumerate(lines):
            value = extract(line.text)
            if value and is_valid(value):
                return IdentifierEntry(
                    value=value,
                    raw_text=line.text,
                    confidence=line.confidence,
                    needs_review=line.needs_review,
                    line_index=index,
                )
        return None

    def extract_batch(self, ocr_results: list[OCRResult]) -> list[ExtractedData]:
        return [self.extract(result) for result in ocr_results]
