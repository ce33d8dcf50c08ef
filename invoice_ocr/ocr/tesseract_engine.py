"""OCR data types and the Tesseract collaborator.

The extraction core only consumes :class:`OCRResult` objects: lines of text
with a confidence, a review flag and (optionally) a bounding box. This module
defines those types, builds them from the JSON shape other OCR providers
emit, and wraps Tesseract both for full-page recognition and for targeted
re-recognition of a region of interest.
"""

import re
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pytesseract
from PIL import Image

from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)

_CJK_RE = re.compile(r"[\u3000-\u303f\u3400-\u9fff\uf900-\ufaff\uff00-\uffef]")


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in image pixel space."""

    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class LineBox:
    """Corner coordinates of a recognised line or word.

    ``x1``/``y1`` may be missing when a provider only reports the origin.
    """

    x0: float
    y0: float
    x1: float | None = None
    y1: float | None = None


@dataclass(frozen=True)
class OCRWord:
    """A single recognised word."""

    text: str
    confidence: float
    bbox: LineBox | None = None


@dataclass(frozen=True)
class OCRLine:
    """A recognised text line, the unit the extraction core works on."""

    text: str
    confidence: float
    needs_review: bool = False
    bbox: LineBox | None = None
    words: list[OCRWord] = field(default_factory=list)


@dataclass(frozen=True)
class OCRResult:
    """Full-page OCR output."""

    text: str
    confidence: float
    lines: list[OCRLine] = field(default_factory=list)

    @property
    def words(self) -> list[OCRWord]:
        return [word for line in self.lines for word in line.words]


@dataclass(frozen=True)
class ROIRecognition:
    """Text re-recognised inside a region of interest."""

    text: str
    confidence: float


def _box_from_dict(raw: Any) -> LineBox | None:
    if not isinstance(raw, dict) or "x0" not in raw or "y0" not in raw:
        return None
    return LineBox(
        x0=float(raw["x0"]),
        y0=float(raw["y0"]),
        x1=float(raw["x1"]) if raw.get("x1") is not None else None,
        y1=float(raw["y1"]) if raw.get("y1") is not None else None,
    )


def ocr_result_from_dict(
    data: dict[str, Any], low_confidence_threshold: float = 0.7
) -> OCRResult:
    """Build an :class:`OCRResult` from a provider's JSON payload.

    Accepts both ``needsReview`` and ``needs_review``. When neither is given
    the flag is derived from ``low_confidence_threshold``. Lines without a
    usable ``bbox`` are kept with ``bbox=None``.

    Args:
        data: Mapping with ``text``, ``confidence`` and ``lines``.
        low_confidence_threshold: Confidence below which a line needs review.

    Returns:
        Parsed OCR result.
    """
    lines: list[OCRLine] = []
    for raw_line in data.get("lines") or []:
        text = str(raw_line.get("text", "")).strip()
        if not text:
            continue
        confidence = float(raw_line.get("confidence", 0.0) or 0.0)
        needs_review = raw_line.get("needsReview", raw_line.get("needs_review"))
        if needs_review is None:
            needs_review = confidence < low_confidence_threshold
        words = [
            OCRWord(
                text=str(w.get("text", "")),
                confidence=float(w.get("confidence", 0.0) or 0.0),
                bbox=_box_from_dict(w.get("bbox")),
            )
            for w in raw_line.get("words") or []
        ]
        lines.append(
            OCRLine(
                text=text,
                confidence=confidence,
                needs_review=bool(needs_review),
                bbox=_box_from_dict(raw_line.get("bbox")),
                words=words,
            )
        )

    text = data.get("text")
    if not isinstance(text, str):
        text = "\n".join(line.text for line in lines)
    confidence = float(data.get("confidence", 0.0) or 0.0)
    return OCRResult(text=text, confidence=confidence, lines=lines)


def _join_words(words: list[str]) -> str:
    """Join word tokens, without spaces between adjacent CJK characters."""
    joined = ""
    for word in words:
        if joined and not (_CJK_RE.match(joined[-1]) and _CJK_RE.match(word[0])):
            joined += " "
        joined += word
    return joined


class TesseractEngine:
    """Wrapper around Tesseract producing line-level OCR results.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        default_lang: Default OCR language code.
        psm: Page segmentation mode for full-page recognition.
        roi_psm: Page segmentation mode for region re-recognition.
        low_confidence_threshold: Lines below this confidence are flagged
            with ``needs_review``.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        default_lang: str = "chi_tra+eng",
        psm: int = 3,
        roi_psm: int = 7,
        low_confidence_threshold: float = 0.7,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_lang = default_lang
        self.psm = psm
        self.roi_psm = roi_psm
        self.low_confidence_threshold = low_confidence_threshold

    def extract_lines(self, image: np.ndarray, lang: str | None = None) -> OCRResult:
        """Recognise a page and group Tesseract words into lines.

        Args:
            image: Page image as a numpy array.
            lang: OCR language code. Defaults to the engine default.

        Returns:
            OCRResult whose lines carry bounding boxes and review flags.
        """
        lang = lang or self.default_lang
        config = f"--psm {self.psm}"

        pil_image = Image.fromarray(image)
        text = pytesseract.image_to_string(pil_image, lang=lang, config=config)
        data = pytesseract.image_to_data(
            pil_image,
            lang=lang,
            config=config,
            output_type=pytesseract.Output.DICT,
        )

        grouped: dict[tuple[int, int, int], list[OCRWord]] = {}
        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            word_text = str(data["text"][i]).strip()
            if conf <= 0 or not word_text:
                continue
            left, top = data["left"][i], data["top"][i]
            key = (
                data["block_num"][i],
                data.get("par_num", [0] * len(data["text"]))[i],
                data["line_num"][i],
            )
            grouped.setdefault(key, []).append(
                OCRWord(
                    text=word_text,
                    confidence=conf / 100.0,
                    bbox=LineBox(
                        x0=left,
                        y0=top,
                        x1=left + data["width"][i],
                        y1=top + data["height"][i],
                    ),
                )
            )

        lines = [self._build_line(words) for words in grouped.values()]
        all_words = [w for line in lines for w in line.words]
        avg_conf = (
            sum(w.confidence for w in all_words) / len(all_words) if all_words else 0.0
        )

        logger.info(
            "OCR extracted %d lines (%d words) with average confidence %.2f",
            len(lines),
            len(all_words),
            avg_conf,
        )
        return OCRResult(text=text, confidence=avg_conf, lines=lines)

    def _build_line(self, words: list[OCRWord]) -> OCRLine:
        boxes = [w.bbox for w in words if w.bbox is not None]
        confidence = sum(w.confidence for w in words) / len(words)
        return OCRLine(
            text=_join_words([w.text for w in words]),
            confidence=confidence,
            needs_review=confidence < self.low_confidence_threshold,
            bbox=LineBox(
                x0=min(b.x0 for b in boxes),
                y0=min(b.y0 for b in boxes),
                x1=max(b.x1 for b in boxes),
                y1=max(b.y1 for b in boxes),
            ),
            words=words,
        )

    def recognize_roi(
        self,
        image: np.ndarray,
        roi: BoundingBox,
        whitelist: str | None = None,
        lang: str | None = None,
    ) -> ROIRecognition:
        """Re-recognise a single region of a page.

        Args:
            image: Full page image as a numpy array.
            roi: Region to crop, in pixel coordinates.
            whitelist: Characters Tesseract may emit for this region.
            lang: OCR language code. Defaults to the engine default.

        Returns:
            Recognised text and its mean word confidence.

        Raises:
            ValueError: If the region does not overlap the image.
        """
        x0, y0 = max(int(roi.x), 0), max(int(roi.y), 0)
        x1, y1 = int(roi.x + roi.width), int(roi.y + roi.height)
        crop = image[y0:y1, x0:x1]
        if crop.size == 0:
            raise ValueError(f"ROI {roi} does not overlap the image")

        config = f"--psm {self.roi_psm}"
        if whitelist:
            config += f" -c tessedit_char_whitelist={whitelist}"

        data = pytesseract.image_to_data(
            Image.fromarray(crop),
            lang=lang or self.default_lang,
            config=config,
            output_type=pytesseract.Output.DICT,
        )
        tokens: list[str] = []
        confidences: list[float] = []
        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            token = str(data["text"][i]).strip()
            if conf > 0 and token:
                tokens.append(token)
                confidences.append(conf / 100.0)

        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        logger.debug("ROI %s recognised %r (%.2f)", roi, tokens, confidence)
        return ROIRecognition(text=_join_words(tokens), confidence=confidence)
