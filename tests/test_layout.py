"""Tests for layout analysis: chunking, alignment and chunk typing."""

import pytest
from conftest import make_line, make_ocr_result

from invoice_ocr.ocr.layout_analyzer import (
    Alignment,
    ChunkType,
    LayoutAnalyzer,
)
from invoice_ocr.ocr.tesseract_engine import BoundingBox, LineBox, OCRLine, OCRResult


def _evenly_spaced(texts: list[str], step: float = 25.0) -> list:
    return [make_line(text, i * step) for i, text in enumerate(texts)]


class TestLayoutAnalyzer:
    """Tests for the LayoutAnalyzer class."""

    def setup_method(self) -> None:
        self.analyzer = LayoutAnalyzer()

    def test_empty_result(self) -> None:
        assert self.analyzer.analyze_layout(OCRResult(text="", confidence=0.0)) == []

    def test_uniform_gaps_single_chunk(self) -> None:
        lines = _evenly_spaced(["a", "b", "c", "d"])
        chunks = self.analyzer.analyze_layout(make_ocr_result(lines))
        assert len(chunks) == 1
        assert chunks[0].start_line_index == 0
        assert chunks[0].end_line_index == 3

    def test_wide_gap_splits(self) -> None:
        lines = [
            make_line("標題", 0),
            make_line("副標", 25),
            make_line("內文一", 85),
            make_line("內文二", 110),
            make_line("內文三", 135),
        ]
        chunks = self.analyzer.analyze_layout(make_ocr_result(lines))
        assert [(c.start_line_index, c.end_line_index) for c in chunks] == [
            (0, 1),
            (2, 4),
        ]
        assert [c.id for c in chunks] == ["chunk_0", "chunk_1"]

    def test_lines_without_boxes_form_one_chunk(self) -> None:
        lines = [make_line("第一行"), make_line("第二行"), make_line("第三行")]
        chunks = self.analyzer.analyze_layout(make_ocr_result(lines))
        assert len(chunks) == 1
        assert chunks[0].lines[2].bbox == LineBox(x0=0.0, y0=40.0, x1=30.0, y1=60.0)

    def test_chunks_cover_every_line_in_order(self, invoice_ocr: OCRResult) -> None:
        chunks = self.analyzer.analyze_layout(invoice_ocr)
        covered = [line.text for chunk in chunks for line in chunk.lines]
        assert covered == [line.text for line in invoice_ocr.lines]
        for previous, following in zip(chunks, chunks[1:]):
            assert following.start_line_index == previous.end_line_index + 1

    def test_invoice_chunking(self, invoice_ocr: OCRResult) -> None:
        chunks = self.analyzer.analyze_layout(invoice_ocr)
        # The items and amounts blocks are both tables and get merged.
        assert [(c.start_line_index, c.end_line_index) for c in chunks] == [
            (0, 2),
            (3, 4),
            (5, 10),
        ]
        assert chunks[2].id == "chunk_2"
        assert chunks[2].type == ChunkType.TABLE


class TestEnsureBoundingBoxes:
    """Tests for synthetic box completion."""

    def setup_method(self) -> None:
        self.analyzer = LayoutAnalyzer(default_line_height=20.0, default_char_width=10.0)

    def test_partial_box_completed(self) -> None:
        line = OCRLine(text="abc", confidence=0.9, bbox=LineBox(x0=5, y0=7))
        (completed,) = self.analyzer.ensure_bounding_boxes([line])
        assert completed.bbox == LineBox(x0=5, y0=7, x1=35, y1=27)

    def test_complete_box_unchanged(self) -> None:
        line = make_line("abc", 10)
        assert self.analyzer.ensure_bounding_boxes([line]) == [line]


class TestWhitespaceDetection:
    """Tests for spacing and boundary detection."""

    def setup_method(self) -> None:
        self.analyzer = LayoutAnalyzer(vertical_spacing_threshold=1.5)

    def test_no_spacings(self) -> None:
        assert self.analyzer.detect_whitespace([]) == []

    def test_uniform_spacings(self) -> None:
        assert self.analyzer.detect_whitespace([5.0, 5.0, 5.0]) == []

    def test_boundaries_at_wide_gaps(self) -> None:
        assert self.analyzer.detect_whitespace([5.0, 5.0, 40.0, 5.0, 40.0]) == [2, 4]

    def test_overlapping_lines(self) -> None:
        # Negative mean: a gap must still exceed the mean to split.
        assert self.analyzer.detect_whitespace([-10.0, -10.0, -1.0]) == [2]

    def test_vertical_spacing(self) -> None:
        lines = [make_line("a", 0), make_line("b", 30), make_line("c", 45)]
        assert self.analyzer.calculate_vertical_spacing(lines) == [10.0, -5.0]


class TestAlignmentAndTyping:
    """Tests for alignment estimates and chunk types."""

    def setup_method(self) -> None:
        self.analyzer = LayoutAnalyzer(horizontal_alignment_tolerance=10.0)

    def test_left_aligned(self) -> None:
        lines = [make_line("aa", 0, x0=10), make_line("bbbbbb", 25, x0=12)]
        assert self.analyzer.analyze_horizontal_alignment(lines) == Alignment("left", 0.9)

    def test_right_aligned(self) -> None:
        lines = [
            make_line("aa", 0, x0=180, width=20),
            make_line("bbbbbbbbbb", 25, x0=100, width=100),
        ]
        assert self.analyzer.analyze_horizontal_alignment(lines) == Alignment("right", 0.9)

    def test_mixed(self) -> None:
        lines = [
            make_line("a", 0, x0=0, width=10),
            make_line("b", 25, x0=100, width=300),
        ]
        assert self.analyzer.analyze_horizontal_alignment(lines) == Alignment("mixed", 0.5)

    def test_empty_alignment(self) -> None:
        assert self.analyzer.analyze_horizontal_alignment([]) == Alignment("unknown", 0.0)

    def test_title_and_footer(self) -> None:
        lines = [
            make_line("公司名稱", 0),
            make_line("說明文字一", 80),
            make_line("說明文字二", 105),
            make_line("說明文字三", 130),
            make_line("謝謝惠顧", 210),
        ]
        chunks = self.analyzer.analyze_layout(make_ocr_result(lines))
        assert [c.type for c in chunks] == [
            ChunkType.TITLE,
            ChunkType.PARAGRAPH,
            ChunkType.FOOTER,
        ]

    def test_list_chunk(self) -> None:
        lines = [
            make_line("標題", 0),
            make_line("- 第一項", 80),
            make_line("- 第二項", 105),
            make_line("- 第三項", 130),
            make_line("- 第四項", 155),
            make_line("結尾", 235),
        ]
        chunks = self.analyzer.analyze_layout(make_ocr_result(lines))
        assert chunks[1].type == ChunkType.LIST

    def test_chunk_bbox(self) -> None:
        lines = [make_line("ab", 10, x0=5, width=20), make_line("abcd", 35, x0=15, width=40)]
        assert self.analyzer.calculate_chunk_bbox(lines) == BoundingBox(5, 10, 50, 45)

    def test_mean_confidence(self) -> None:
        lines = [make_line("a", 0, confidence=0.8), make_line("b", 25, confidence=0.6)]
        (chunk,) = self.analyzer.analyze_layout(make_ocr_result(lines))
        assert chunk.mean_confidence == pytest.approx(0.7)
        assert chunk.text == "a\nb"
