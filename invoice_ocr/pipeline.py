"""End-to-end analysis of one OCR'd document.

Chunks the OCR lines, classifies the text, detects invoice fields on the
chunks, extracts templated ROI fields for known document types, and
validates the resulting amounts and tax ID. Layout-aware detection is the
primary source for validation; the line-oriented keyword extractor fills
any slot it leaves empty.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import numpy as np

from invoice_ocr.extraction.document_classifier import (
    ClassificationResult,
    DocumentClassifier,
    DocumentType,
)
from invoice_ocr.extraction.field_detector import FieldDetector, FieldRecord
from invoice_ocr.extraction.roi_extractor import (
    ROIExtraction,
    ROIExtractor,
    ROIRecognizer,
)
from invoice_ocr.extraction.rule_extractor import ExtractedData, RuleExtractor
from invoice_ocr.ocr.layout_analyzer import Chunk, LayoutAnalyzer
from invoice_ocr.ocr.tesseract_engine import OCRResult
from invoice_ocr.utils.config import AppConfig
from invoice_ocr.utils.dictionaries import DictionaryStore
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.utils.serialization import to_plain
from invoice_ocr.validation.rules_engine import (
    AccountContext,
    ValidationResult,
    Validator,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class DocumentAnalysis:
    """Everything produced for one document."""

    classification: ClassificationResult
    chunks: list[Chunk]
    fields: FieldRecord
    roi_fields: ROIExtraction | None
    extracted: ExtractedData
    validation: ValidationResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification.to_dict(),
            "chunks": [chunk_to_dict(chunk) for chunk in self.chunks],
            "fields": self.fields.to_dict(),
            "roi_fields": self.roi_fields.to_dict() if self.roi_fields else None,
            "extracted": self.extracted.to_dict(),
            "validation": self.validation.to_dict(),
        }


def chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    """Summary of a chunk without its per-word OCR detail."""
    return {
        "id": chunk.id,
        "type": chunk.type.value,
        "text": chunk.text,
        "bbox": to_plain(chunk.bbox),
        "start_line_index": chunk.start_line_index,
        "end_line_index": chunk.end_line_index,
        "alignment": to_plain(chunk.alignment),
        "field_type": to_plain(chunk.field_type),
        "field_info": to_plain(chunk.field_info),
    }


def merge_extracted(primary: ExtractedData, fallback: ExtractedData) -> ExtractedData:
    """Fill the empty slots of ``primary`` from ``fallback``.

    Amounts are merged per keyword, so a keyword ``primary`` already has is
    never taken from ``fallback``.
    """
    return replace(
        primary,
        amounts=[
            *primary.amounts,
            *(e for e in fallback.amounts if primary.amount_for(e.keyword) is None),
        ],
        items=primary.items or fallback.items,
        tax_id=primary.tax_id or fallback.tax_id,
        invoice_no=primary.invoice_no or fallback.invoice_no,
        raw_lines=primary.raw_lines or fallback.raw_lines,
    )


class DocumentPipeline:
    """Runs every analysis stage on an OCR result.

    Components not passed explicitly are built from ``config``.

    Args:
        config: Application configuration.
        recognizer: Collaborator for ROI re-recognition, if any.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        recognizer: ROIRecognizer | None = None,
        layout_analyzer: LayoutAnalyzer | None = None,
        classifier: DocumentClassifier | None = None,
        field_detector: FieldDetector | None = None,
        roi_extractor: ROIExtractor | None = None,
        rule_extractor: RuleExtractor | None = None,
        validator: Validator | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.layout_analyzer = layout_analyzer or LayoutAnalyzer(
            **self.config.layout.model_dump()
        )
        self.classifier = classifier or DocumentClassifier(
            store=DictionaryStore(Path(self.config.classification.keywords_path))
        )
        self.field_detector = field_detector or FieldDetector()
        self.roi_extractor = roi_extractor or ROIExtractor(
            store=DictionaryStore(Path(self.config.roi.templates_path)),
            recognizer=recognizer,
            max_workers=self.config.roi.max_workers,
            default_image_size=(
                self.config.roi.default_image_width,
                self.config.roi.default_image_height,
            ),
        )
        self.rule_extractor = rule_extractor or RuleExtractor(
            self.config.extraction.amount_keywords
        )
        self.validator = validator or Validator(self.config.validation.tolerance)

    def analyze(
        self,
        ocr_result: OCRResult,
        page_image: np.ndarray | None = None,
        account: AccountContext | None = None,
    ) -> DocumentAnalysis:
        """Analyze one page.

        Args:
            ocr_result: OCR output of the page.
            page_image: The page image, enabling ROI re-recognition.
            account: Account the tax ID is checked against.

        Returns:
            Classification, annotated chunks, detected fields, ROI fields
            (``None`` for unclassified documents), the validated data and
            the validation verdict.
        """
        chunks = self.layout_analyzer.analyze_layout(ocr_result)
        classification = self.classifier.classify(ocr_result.text)

        fields = self.field_detector.detect_all_fields(chunks, ocr_result.lines)
        annotated = self.field_detector.annotate_chunks(chunks, fields)

        roi_fields = None
        if classification.doc_type != DocumentType.OTHER:
            roi_fields = self.roi_extractor.extract_fields(
                ocr_result, classification.doc_type, page_image
            )

        extracted = merge_extracted(
            ExtractedData.from_field_record(fields),
            self.rule_extractor.extract(ocr_result),
        )
        validation = self.validator.validate(extracted, account)

        logger.info(
            "Analyzed %s document: %d chunks, %d fields, validation %s",
            classification.doc_type,
            len(annotated),
            len(fields.detected()),
            "passed" if validation.is_valid else "failed",
        )
        return DocumentAnalysis(
            classification=classification,
            chunks=annotated,
            fields=fields,
            roi_fields=roi_fields,
            extracted=extracted,
            validation=validation,
        )
