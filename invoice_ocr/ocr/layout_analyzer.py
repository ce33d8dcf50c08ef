"""Geometric layout analysis: grouping OCR lines into chunks.

Lines are split into chunks wherever the vertical gap to the next line is
clearly larger than the document's average gap. Each chunk then gets a
horizontal alignment estimate and a coarse type (title, table, list,
paragraph, footer) from position and shape heuristics.
"""

import re
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

import numpy as np

from invoice_ocr.ocr.tesseract_engine import BoundingBox, LineBox, OCRLine, OCRResult
from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)

_LIST_MARKER_RE = re.compile(r"^[\d\-\*•]")
_DIGIT_RE = re.compile(r"\d")


class ChunkType(StrEnum):
    """Coarse layout role of a chunk."""

    TITLE = "TITLE"
    TABLE = "TABLE"
    PARAGRAPH = "PARAGRAPH"
    LIST = "LIST"
    FOOTER = "FOOTER"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Alignment:
    """Horizontal alignment of a chunk's lines."""

    type: str
    confidence: float


@dataclass(frozen=True)
class Chunk:
    """A contiguous run of OCR lines treated as one layout unit.

    ``field_type`` and ``field_info`` stay empty until the chunk is
    annotated with a detected field.
    """

    id: str
    lines: list[OCRLine]
    bbox: BoundingBox
    start_line_index: int
    end_line_index: int
    type: ChunkType = ChunkType.UNKNOWN
    alignment: Alignment = field(default_factory=lambda: Alignment("unknown", 0.0))
    field_type: str | None = None
    field_info: Any = None

    @property
    def text(self) -> str:
        return chunk_text(self)

    @property
    def mean_confidence(self) -> float:
        return chunk_confidence(self)


def chunk_text(chunk: Chunk) -> str:
    """Text of a chunk, one OCR line per text line."""
    return "\n".join(line.text for line in chunk.lines)


def chunk_confidence(chunk: Chunk) -> float:
    """Mean OCR confidence of the chunk's lines, 0 for an empty chunk."""
    if not chunk.lines:
        return 0.0
    return sum(line.confidence or 0.0 for line in chunk.lines) / len(chunk.lines)


class LayoutAnalyzer:
    """Splits OCR lines into chunks using whitespace and alignment.

    Args:
        vertical_spacing_threshold: Multiple of the mean line gap above
            which a gap becomes a chunk boundary.
        horizontal_alignment_tolerance: Edge standard deviation, in pixels,
            still considered aligned.
        min_chunk_lines: Smallest number of lines that forms a chunk.
        default_line_height: Height used for lines without geometry.
        default_char_width: Per-character width used for lines without
            geometry.
    """

    def __init__(
        self,
        vertical_spacing_threshold: float = 1.5,
        horizontal_alignment_tolerance: float = 10.0,
        min_chunk_lines: int = 1,
        default_line_height: float = 20.0,
        default_char_width: float = 10.0,
    ) -> None:
        self.vertical_spacing_threshold = vertical_spacing_threshold
        self.horizontal_alignment_tolerance = horizontal_alignment_tolerance
        self.min_chunk_lines = max(1, min_chunk_lines)
        self.default_line_height = default_line_height
        self.default_char_width = default_char_width

    def analyze_layout(self, ocr_result: OCRResult) -> list[Chunk]:
        """Group the lines of an OCR result into typed chunks.

        Args:
            ocr_result: OCR output; lines may lack bounding boxes.

        Returns:
            Chunks in reading order. Empty when there are no lines.
        """
        lines = list(ocr_result.lines or [])
        if not lines:
            return []

        lines = self.ensure_bounding_boxes(lines)
        spacings = self.calculate_vertical_spacing(lines)
        boundaries = self.detect_whitespace(spacings)
        chunks = self.create_chunks(lines, boundaries)
        chunks = [
            replace(chunk, alignment=self.analyze_horizontal_alignment(chunk.lines))
            for chunk in chunks
        ]
        chunks = self.classify_chunks(chunks)
        merged = self.merge_related_chunks(chunks)

        logger.info(
            "Layout analysis: %d lines -> %d chunks (%d before merging)",
            len(lines),
            len(merged),
            len(chunks),
        )
        return merged

    def ensure_bounding_boxes(self, lines: list[OCRLine]) -> list[OCRLine]:
        """Give every line a complete box.

        Lines without geometry get synthetic, monotonically increasing boxes
        (fixed height, width proportional to text length). Boxes missing a
        right or bottom edge are completed the same way.
        """
        result: list[OCRLine] = []
        for index, line in enumerate(lines):
            width = len(line.text) * self.default_char_width
            bbox = line.bbox
            if bbox is None:
                bbox = LineBox(
                    x0=0.0,
                    y0=index * self.default_line_height,
                    x1=width,
                    y1=(index + 1) * self.default_line_height,
                )
            elif bbox.x1 is None or bbox.y1 is None:
                bbox = LineBox(
                    x0=bbox.x0,
                    y0=bbox.y0,
                    x1=bbox.x1 if bbox.x1 is not None else bbox.x0 + width,
                    y1=(
                        bbox.y1
                        if bbox.y1 is not None
                        else bbox.y0 + self.default_line_height
                    ),
                )
            else:
                result.append(line)
                continue
            result.append(replace(line, bbox=bbox))
        return result

    def calculate_vertical_spacing(self, lines: list[OCRLine]) -> list[float]:
        """Gap between the bottom of each line and the top of the next."""
        spacings: list[float] = []
        for current, following in zip(lines, lines[1:]):
            bottom = (
                current.bbox.y1
                if current.bbox.y1 is not None
                else current.bbox.y0 + self.default_line_height
            )
            spacings.append(following.bbox.y0 - bottom)
        return spacings

    def detect_whitespace(self, spacings: list[float]) -> list[int]:
        """Indices of gaps wide enough to separate two chunks.

        A gap at index ``i`` separates line ``i`` from line ``i + 1``.
        """
        if not spacings:
            return []

        mean = float(np.mean(spacings))
        threshold = mean * self.vertical_spacing_threshold
        # With a negative mean the scaled threshold drops below the mean.
        return [
            i
            for i, spacing in enumerate(spacings)
            if spacing > threshold and spacing > mean
        ]

    def create_chunks(self, lines: list[OCRLine], boundaries: list[int]) -> list[Chunk]:
        """Cut the line sequence at each boundary index."""
        boundary_set = set(boundaries)
        chunks: list[Chunk] = []
        current: list[OCRLine] = []
        start = 0

        for index, line in enumerate(lines):
            current.append(line)
            if index in boundary_set or index == len(lines) - 1:
                if len(current) >= self.min_chunk_lines:
                    chunks.append(
                        Chunk(
                            id=f"chunk_{len(chunks)}",
                            lines=current,
                            bbox=self.calculate_chunk_bbox(current),
                            start_line_index=start,
                            end_line_index=index,
                        )
                    )
                current = []
                start = index + 1

        return chunks

    def calculate_chunk_bbox(self, lines: list[OCRLine]) -> BoundingBox:
        """Union of the line boxes as ``x, y, width, height``."""
        if not lines:
            return BoundingBox(0, 0, 0, 0)
        x_min = min(line.bbox.x0 for line in lines)
        y_min = min(line.bbox.y0 for line in lines)
        x_max = max(line.bbox.x1 for line in lines)
        y_max = max(line.bbox.y1 for line in lines)
        return BoundingBox(x_min, y_min, x_max - x_min, y_max - y_min)

    def analyze_horizontal_alignment(self, lines: list[OCRLine]) -> Alignment:
        """Classify alignment from the spread of left and right edges."""
        if not lines:
            return Alignment("unknown", 0.0)

        left_spread = float(np.std([line.bbox.x0 for line in lines]))
        right_spread = float(np.std([line.bbox.x1 for line in lines]))
        tolerance = self.horizontal_alignment_tolerance

        if left_spread < tolerance:
            return Alignment("left", 0.9)
        if right_spread < tolerance:
            return Alignment("right", 0.9)
        if left_spread < tolerance * 2:
            return Alignment("left", 0.6)
        return Alignment("mixed", 0.5)

    def classify_chunks(self, chunks: list[Chunk]) -> list[Chunk]:
        """Assign a :class:`ChunkType` to every chunk."""
        return [
            replace(chunk, type=self._classify_chunk(chunk, index, len(chunks)))
            for index, chunk in enumerate(chunks)
        ]

    def _classify_chunk(self, chunk: Chunk, index: int, total: int) -> ChunkType:
        text = " ".join(line.text for line in chunk.lines)
        line_count = len(chunk.lines)

        if index == 0 and line_count <= 2:
            return ChunkType.TITLE
        if (
            line_count >= 3
            and chunk.alignment.type == "left"
            and chunk.alignment.confidence > 0.8
            and _DIGIT_RE.search(text)
        ):
            return ChunkType.TABLE
        if _LIST_MARKER_RE.match(text):
            return ChunkType.LIST
        if index == total - 1 and line_count <= 2:
            return ChunkType.FOOTER
        return ChunkType.PARAGRAPH

    def merge_related_chunks(self, chunks: list[Chunk]) -> list[Chunk]:
        """Merge runs of adjacent TABLE or LIST chunks in one forward pass."""
        if len(chunks) <= 1:
            return list(chunks)

        merged: list[Chunk] = []
        current = chunks[0]
        for following in chunks[1:]:
            if self._are_related(current, following):
                current = self._merge(current, following)
            else:
                merged.append(current)
                current = following
        merged.append(current)
        return merged

    @staticmethod
    def _are_related(first: Chunk, second: Chunk) -> bool:
        return first.type == second.type and first.type in (
            ChunkType.TABLE,
            ChunkType.LIST,
        )

    @staticmethod
    def _merge(first: Chunk, second: Chunk) -> Chunk:
        x_min = min(first.bbox.x, second.bbox.x)
        y_min = min(first.bbox.y, second.bbox.y)
        x_max = max(first.bbox.x + first.bbox.width, second.bbox.x + second.bbox.width)
        y_max = max(
            first.bbox.y + first.bbox.height, second.bbox.y + second.bbox.height
        )
        return replace(
            first,
            lines=[*first.lines, *second.lines],
            bbox=BoundingBox(x_min, y_min, x_max - x_min, y_max - y_min),
            end_line_index=second.end_line_index,
        )
