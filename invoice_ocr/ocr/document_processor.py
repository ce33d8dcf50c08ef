"""Page-image processing: OCR followed by document analysis.

Loads page images, runs Tesseract on each, and hands the OCR result and the
image to the analysis pipeline so ROI fields can be re-recognised. Batches
are processed in order; a failing page is reported and skipped.
"""

import io
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
from PIL import Image, UnidentifiedImageError

from invoice_ocr.ocr.tesseract_engine import OCRResult, TesseractEngine
from invoice_ocr.pipeline import DocumentAnalysis, DocumentPipeline
from invoice_ocr.utils.config import AppConfig
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.validation.rules_engine import AccountContext

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class PageResult:
    """OCR and analysis results for a single page, or why it failed."""

    page_number: int
    ocr_result: OCRResult | None = None
    analysis: DocumentAnalysis | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "ocr_text": self.ocr_result.text if self.ocr_result else None,
            "ocr_confidence": self.ocr_result.confidence if self.ocr_result else None,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "error": self.error,
        }


def load_image(source: Path | bytes) -> np.ndarray:
    """Load an image file or raw image bytes as an RGB numpy array.

    Raises:
        ValueError: If the data is not a readable image.
    """
    try:
        if isinstance(source, bytes):
            img = Image.open(io.BytesIO(source))
        else:
            img = Image.open(Path(source))
        return np.array(img.convert("RGB"))
    except UnidentifiedImageError as exc:
        raise ValueError(f"Unreadable image: {exc}") from exc


class DocumentProcessor:
    """OCR and analysis of page images.

    Args:
        config: Application configuration object.
        engine: OCR engine. Built from ``config.ocr`` when omitted.
        pipeline: Analysis pipeline. Built from ``config`` when omitted,
            with ``engine`` as its ROI recognizer.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        engine: TesseractEngine | None = None,
        pipeline: DocumentPipeline | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.ocr_engine = engine or TesseractEngine(
            tesseract_cmd=self.config.ocr.tesseract_cmd,
            default_lang=self.config.ocr.default_lang,
            psm=self.config.ocr.psm,
            roi_psm=self.config.ocr.roi_psm,
            low_confidence_threshold=self.config.ocr.low_confidence_threshold,
        )
        self.pipeline = pipeline or DocumentPipeline(
            self.config, recognizer=self.ocr_engine
        )

    def process_image(
        self,
        image: np.ndarray,
        page_number: int = 1,
        account: AccountContext | None = None,
    ) -> PageResult:
        """OCR one page image and analyze the result."""
        ocr_result = self.ocr_engine.extract_lines(image)
        analysis = self.pipeline.analyze(ocr_result, page_image=image, account=account)
        return PageResult(
            page_number=page_number, ocr_result=ocr_result, analysis=analysis
        )

    def process_batch(
        self,
        images: list[np.ndarray],
        on_progress: ProgressCallback | None = None,
        account: AccountContext | None = None,
    ) -> list[PageResult]:
        """Process page images one after another.

        A page whose OCR or analysis fails yields a :class:`PageResult`
        carrying the error, and the batch continues.

        Args:
            images: Page images in order.
            on_progress: Called with ``(current, total)`` after each page
                completes, successful or not.
            account: Account the tax IDs are checked against.

        Returns:
            One result per input image, in input order.
        """
        total = len(images)
        results: list[PageResult] = []

        for index, image in enumerate(images, start=1):
            try:
                result = self.process_image(image, page_number=index, account=account)
            except Exception as exc:
                logger.error("Page %d/%d failed: %s", index, total, exc)
                result = PageResult(page_number=index, error=str(exc))
            results.append(result)
            if on_progress is not None:
                on_progress(index, total)

        logger.info(
            "Processed %d pages (%d failed)",
            total,
            sum(1 for r in results if not r.ok),
        )
        return results
