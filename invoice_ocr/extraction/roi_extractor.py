"""Template-driven field extraction from regions of interest.

Each document type has a template of fields. A field names a coarse page
region, a character whitelist, the keywords that label it and a value
pattern. Extraction tries three tiers in order:

1. ``roi-ocr``: re-recognise the field's region on the page image with the
   whitelist, keeping the recogniser's confidence.
2. ``text-extraction`` (0.6): the pattern matched right after a keyword in
   the full OCR text.
3. ``fallback`` (0.5): the pattern matched anywhere in the full text.

Re-recognition calls for one document run concurrently on a thread pool.
"""

import re
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
from pydantic import BaseModel, ValidationError, field_validator

from invoice_ocr.ocr.tesseract_engine import (
    BoundingBox,
    LineBox,
    OCRLine,
    OCRResult,
    ROIRecognition,
)
from invoice_ocr.utils.dictionaries import DictionaryStore
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.utils.serialization import to_plain

logger = get_logger(__name__)

_DIGITS = "0123456789"
_MONEY_PATTERN = r"[\d,]+(?:\.\d{1,2})?"
_NUMERIC_PUNCTUATION = set(".,-")

TEXT_TIER_CONFIDENCE = 0.6
FALLBACK_TIER_CONFIDENCE = 0.5

# (x, y, width, height) as fractions of the page size.
REGION_FRACTIONS: dict[str, tuple[float, float, float, float]] = {
    "top-right": (0.6, 0.0, 0.4, 0.2),
    "top-left": (0.0, 0.0, 0.4, 0.2),
    "middle-left": (0.0, 0.3, 0.4, 0.4),
    "middle-right": (0.6, 0.3, 0.4, 0.4),
    "bottom-left": (0.0, 0.7, 0.5, 0.3),
    "bottom-right": (0.5, 0.7, 0.5, 0.3),
    "middle": (0.2, 0.3, 0.6, 0.4),
}

DEFAULT_TEMPLATES: dict[str, dict[str, dict[str, Any]]] = {
    "invoice": {
        "invoiceNumber": {
            "region": "top-right",
            "whitelist": "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789",
            "keywords": ["發票號碼", "字軌", "發票字軌"],
            "pattern": r"[A-Z]{2}\d{8}",
        },
        "buyerTaxId": {
            "region": "middle-left",
            "whitelist": _DIGITS,
            "keywords": ["買受人", "買方統編", "統一編號"],
            "pattern": r"\d{8}",
        },
        "sellerTaxId": {
            "region": "top-left",
            "whitelist": _DIGITS,
            "keywords": ["賣方統編", "賣方", "統一編號"],
            "pattern": r"\d{8}",
        },
        "salesAmount": {
            "region": "bottom-left",
            "whitelist": "0123456789.,",
            "keywords": ["銷售額", "應稅銷售額", "小計"],
            "pattern": _MONEY_PATTERN,
        },
        "taxAmount": {
            "region": "bottom-left",
            "whitelist": "0123456789.,",
            "keywords": ["稅額", "營業稅"],
            "pattern": _MONEY_PATTERN,
        },
        "totalAmount": {
            "region": "bottom-right",
            "whitelist": "0123456789.,",
            "keywords": ["總計", "合計", "總金額"],
            "pattern": _MONEY_PATTERN,
        },
    },
    "utility": {
        "accountNumber": {
            "region": "top-left",
            "whitelist": "0123456789-",
            "keywords": ["電號", "水號", "戶號", "用戶號碼"],
            "pattern": r"[\d-]+",
        },
        "dueDate": {
            "region": "top-right",
            "whitelist": "0123456789/-年月日",
            "keywords": ["繳費期限", "到期日", "截止日"],
            "pattern": r"\d{4}[-/年]\d{1,2}[-/月]\d{1,2}日?",
        },
        "amountDue": {
            "region": "bottom-right",
            "whitelist": "0123456789.,",
            "keywords": ["本期應繳", "應繳金額", "總計", "合計"],
            "pattern": _MONEY_PATTERN,
        },
        "usage": {
            "region": "middle",
            "whitelist": "0123456789.",
            "keywords": ["本期用量", "度數", "用電度數", "用水度數"],
            "pattern": r"[\d.]+",
        },
    },
    "labor_health": {
        "insuranceFee": {
            "region": "middle-right",
            "whitelist": "0123456789.,",
            "keywords": ["保險費合計", "應繳金額", "合計", "總計"],
            "pattern": _MONEY_PATTERN,
        },
        "paymentNumber": {
            "region": "top-right",
            "whitelist": _DIGITS,
            "keywords": ["繳款書號", "繳款單號", "單號"],
            "pattern": r"\d+",
        },
        "insuredSalary": {
            "region": "middle",
            "whitelist": "0123456789.,",
            "keywords": ["投保薪資", "月投保薪資"],
            "pattern": r"[\d,]+",
        },
    },
}


class FieldTemplate(BaseModel):
    """One templated field: where it sits and what it looks like."""

    region: str
    whitelist: str = ""
    keywords: list[str]
    pattern: str

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid pattern {value!r}: {exc}") from exc
        return value

    @property
    def is_numeric(self) -> bool:
        """Digit whitelist with at most ``.``, ``,`` and ``-`` besides."""
        chars = set(self.whitelist)
        return set(_DIGITS) <= chars and chars <= set(_DIGITS) | _NUMERIC_PUNCTUATION

    @property
    def is_money(self) -> bool:
        return self.is_numeric and "." in self.whitelist and "," in self.whitelist


class ROIRecognizer(Protocol):
    """Anything that can re-recognise a rectangle of a page image."""

    def recognize_roi(
        self, image: np.ndarray, roi: BoundingBox, whitelist: str | None = None
    ) -> ROIRecognition: ...


@dataclass(frozen=True)
class NamedROI:
    field_name: str
    roi: BoundingBox


@dataclass(frozen=True)
class ROIField:
    """Extracted value of one templated field and how it was obtained."""

    value: Any
    raw_value: str | None
    confidence: float
    method: str
    roi: BoundingBox | None = None


@dataclass(frozen=True)
class ROIExtraction:
    doc_type: str
    fields: dict[str, ROIField] = field(default_factory=dict)
    rois: list[NamedROI] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


def region_to_roi(
    region: str,
    image_width: float,
    image_height: float,
    seed: LineBox | None = None,
) -> BoundingBox:
    """Resolve a region tag to a pixel rectangle clamped to the page.

    Known tags map to fixed fractions of the page. An unknown tag keeps a
    box to the right of the ``seed`` line (the whole page without one).
    """
    if region in REGION_FRACTIONS:
        fx, fy, fw, fh = REGION_FRACTIONS[region]
        roi = BoundingBox(
            image_width * fx, image_height * fy, image_width * fw, image_height * fh
        )
    elif seed is not None:
        x = seed.x1 if seed.x1 is not None else seed.x0 + 100
        height = (seed.y1 - seed.y0) if seed.y1 is not None else 0
        roi = BoundingBox(x, seed.y0, min(200, image_width - x), height or 30)
    else:
        roi = BoundingBox(0, 0, image_width, image_height)
    return clamp_roi(roi, image_width, image_height)


def clamp_roi(roi: BoundingBox, image_width: float, image_height: float) -> BoundingBox:
    x = min(max(roi.x, 0.0), image_width)
    y = min(max(roi.y, 0.0), image_height)
    width = max(0.0, min(roi.x + roi.width, image_width) - x)
    height = max(0.0, min(roi.y + roi.height, image_height) - y)
    return BoundingBox(x, y, width, height)


def estimate_page_size(
    ocr_result: OCRResult,
    page_image: np.ndarray | None = None,
    default: tuple[float, float] = (800.0, 600.0),
) -> tuple[float, float]:
    """Page ``(width, height)``: from the image, else the OCR geometry."""
    if page_image is not None:
        return float(page_image.shape[1]), float(page_image.shape[0])

    boxes = [w.bbox for w in ocr_result.words if w.bbox is not None]
    if not boxes:
        boxes = [line.bbox for line in ocr_result.lines if line.bbox is not None]
    if not boxes:
        return default
    width = max(b.x1 if b.x1 is not None else b.x0 + 100 for b in boxes)
    height = max(b.y1 if b.y1 is not None else b.y0 + 20 for b in boxes)
    return float(width), float(height)


class ROIExtractor:
    """Extracts templated fields for a classified document.

    Args:
        templates: ``{doc_type: {field_name: template}}``. Takes precedence
            over the store.
        store: Persistent template dictionary. When it holds nothing usable,
            the built-in templates are used and written back to it.
        recognizer: Collaborator for region re-recognition. Without one,
            only the text tiers are used.
        max_workers: Concurrent re-recognition calls per document.
        default_image_size: Page size assumed when neither an image nor OCR
            geometry is available.
    """

    def __init__(
        self,
        templates: dict[str, dict[str, Any]] | None = None,
        store: DictionaryStore | None = None,
        recognizer: ROIRecognizer | None = None,
        max_workers: int = 4,
        default_image_size: tuple[float, float] = (800.0, 600.0),
    ) -> None:
        self.store = store
        self.recognizer = recognizer
        self.max_workers = max(1, max_workers)
        self.default_image_size = default_image_size
        if templates is not None:
            self.templates = self._parse_templates(templates)
        else:
            self.templates = self._load_templates()

    @staticmethod
    def _parse_templates(
        raw: dict[str, dict[str, Any]],
    ) -> dict[str, dict[str, FieldTemplate]]:
        return {
            doc_type: {
                name: FieldTemplate.model_validate(config)
                for name, config in (fields or {}).items()
            }
            for doc_type, fields in raw.items()
        }

    def _load_templates(self) -> dict[str, dict[str, FieldTemplate]]:
        if self.store is not None:
            stored = self.store.load()
            if stored:
                try:
                    return self._parse_templates(stored)
                except ValidationError as exc:
                    logger.warning(
                        "Invalid ROI templates in %s, using defaults: %s",
                        self.store.path,
                        exc,
                    )
                    return self.get_default_templates()
        templates = self.get_default_templates()
        if self.store is not None:
            logger.info("No stored ROI templates, saving defaults to %s", self.store.path)
            self._save(templates)
        return templates

    @classmethod
    def get_default_templates(cls) -> dict[str, dict[str, FieldTemplate]]:
        return cls._parse_templates(DEFAULT_TEMPLATES)

    def extract_fields(
        self,
        ocr_result: OCRResult,
        doc_type: str,
        page_image: np.ndarray | None = None,
    ) -> ROIExtraction:
        """Extract every templated field of ``doc_type``.

        Args:
            ocr_result: Full-page OCR output.
            doc_type: Classified document type.
            page_image: Page image for region re-recognition, if available.

        Returns:
            Fields in template order. Fields found by no tier are omitted.
        """
        template = self.templates.get(doc_type)
        if not template:
            logger.warning("No ROI template for document type %s", doc_type)
            return ROIExtraction(doc_type=doc_type)

        image_width, image_height = estimate_page_size(
            ocr_result, page_image, self.default_image_size
        )
        located: dict[str, BoundingBox] = {}
        rois: list[NamedROI] = []
        for name, config in template.items():
            line = self.locate_line(ocr_result.lines, config.keywords)
            if line is None:
                continue
            roi = region_to_roi(config.region, image_width, image_height, line.bbox)
            located[name] = roi
            rois.append(NamedROI(field_name=name, roi=roi))

        recognitions = self._recognize_all(page_image, located, template)

        fields: dict[str, ROIField] = {}
        for name, config in template.items():
            roi = located.get(name)
            recognition = recognitions.get(name)
            if recognition is not None:
                value = self.parse_field_value(recognition.text, config)
                if value is not None:
                    fields[name] = ROIField(
                        value=value,
                        raw_value=recognition.text,
                        confidence=recognition.confidence,
                        method="roi-ocr",
                        roi=roi,
                    )
                    continue
            text_field = self._extract_from_text(ocr_result.text, config, roi)
            if text_field is not None:
                fields[name] = text_field

        logger.info(
            "ROI extraction for %s: %d/%d fields (%d located)",
            doc_type,
            len(fields),
            len(template),
            len(rois),
        )
        return ROIExtraction(doc_type=doc_type, fields=fields, rois=rois)

    @staticmethod
    def locate_line(lines: list[OCRLine], keywords: list[str]) -> OCRLine | None:
        """First line containing any of ``keywords``."""
        for line in lines:
            if any(keyword in line.text for keyword in keywords):
                return line
        return None

    def _recognize_all(
        self,
        page_image: np.ndarray | None,
        located: dict[str, BoundingBox],
        template: dict[str, FieldTemplate],
    ) -> dict[str, ROIRecognition]:
        if page_image is None or self.recognizer is None or not located:
            return {}

        results: dict[str, ROIRecognition] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures: dict[str, Future[ROIRecognition]] = {
                name: executor.submit(
                    self.recognizer.recognize_roi,
                    page_image,
                    roi,
                    template[name].whitelist or None,
                )
                for name, roi in located.items()
            }
            for name, future in futures.items():
                try:
                    recognition = future.result()
                except Exception as exc:
                    logger.warning("ROI re-OCR failed for %s: %s", name, exc)
                    continue
                if recognition.text.strip():
                    results[name] = recognition
                else:
                    logger.debug("ROI re-OCR returned no text for %s", name)
        return results

    def _extract_from_text(
        self, text: str, config: FieldTemplate, roi: BoundingBox | None
    ) -> ROIField | None:
        pattern = re.compile(config.pattern)
        for keyword in config.keywords:
            index = text.find(keyword)
            if index == -1:
                continue
            match = pattern.search(text, index + len(keyword))
            if match:
                found = self._text_field(
                    match.group(0), config, TEXT_TIER_CONFIDENCE, "text-extraction", roi
                )
                if found is not None:
                    return found

        match = pattern.search(text)
        if match:
            return self._text_field(
                match.group(0), config, FALLBACK_TIER_CONFIDENCE, "fallback", roi
            )
        return None

    def _text_field(
        self,
        raw: str,
        config: FieldTemplate,
        confidence: float,
        method: str,
        roi: BoundingBox | None,
    ) -> ROIField | None:
        value = self.parse_field_value(raw, config)
        if value is None:
            return None
        return ROIField(
            value=value, raw_value=raw, confidence=confidence, method=method, roi=roi
        )

    @staticmethod
    def parse_field_value(raw: str | None, config: FieldTemplate) -> Any:
        """Coerce raw text by the field's whitelist.

        Money fields become floats, other numeric fields digit strings and
        everything else a trimmed string. ``None`` when nothing is left.
        """
        if not raw:
            return None
        value = raw.strip()
        if config.is_money:
            cleaned = re.sub(r"[^\d.]", "", value)
            if not re.search(r"\d", cleaned):
                return None
            try:
                return float(cleaned)
            except ValueError:
                logger.debug("Unparseable amount %r", raw)
                return None
        if config.is_numeric:
            value = re.sub(r"\D", "", value)
        return value or None

    def define_roi(self, doc_type: str, field_name: str, config: dict[str, Any]) -> None:
        """Add or replace one field template and persist the templates.

        Raises:
            pydantic.ValidationError: If ``config`` is not a valid template.
        """
        template = FieldTemplate.model_validate(config)
        self.templates.setdefault(doc_type, {})[field_name] = template
        self._save(self.templates)
        logger.info("Defined ROI %s.%s", doc_type, field_name)

    def reset_to_default(self) -> None:
        self.templates = self.get_default_templates()
        self._save(self.templates)

    def get_all_templates(self) -> dict[str, dict[str, dict[str, Any]]]:
        return _dump_templates(self.templates)

    def _save(self, templates: dict[str, dict[str, FieldTemplate]]) -> None:
        if self.store is not None:
            self.store.save(_dump_templates(templates))


def _dump_templates(
    templates: dict[str, dict[str, FieldTemplate]],
) -> dict[str, dict[str, dict[str, Any]]]:
    return {
        doc_type: {name: t.model_dump() for name, t in fields.items()}
        for doc_type, fields in templates.items()
    }
