"""Tests for weighted-rule candidate scoring."""

import pytest
from conftest import make_line

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
from invoice_ocr.ocr.tesseract_engine import BoundingBox


def _make_candidate(
    value: str = "x", text: str = "text", index: int = 0, count: int = 10
) -> Candidate:
    chunk = Chunk(
        id=f"chunk_{index}",
        lines=[make_line(text, confidence=0.8)],
        bbox=BoundingBox(0, 0, 10, 10),
        start_line_index=index,
        end_line_index=index,
    )
    return Candidate(value=value, chunk=chunk, chunk_index=index, chunk_count=count)


class TestScoring:
    """Tests for score_candidate and score_and_pick_best."""

    def test_breakdown_and_base(self) -> None:
        scorers = [
            Scorer("always", 0.3, lambda c: True),
            Scorer("never", 0.2, lambda c: False),
            Scorer("graded", 0.1, chunk_ocr_confidence),
        ]
        scored = score_candidate(_make_candidate(), scorers, base=0.5)
        assert scored.breakdown == {"always": 0.3, "never": 0.0, "graded": pytest.approx(0.08)}
        assert scored.score == pytest.approx(0.88)

    def test_confidence_clipped(self) -> None:
        scored = score_candidate(_make_candidate(), [Scorer("big", 2.0, lambda c: True)])
        assert scored.confidence == 1.0

    def test_best_wins_and_ties_keep_first(self) -> None:
        scorers = [Scorer("label", 0.5, text_contains_any(["發票"]))]
        candidates = [
            _make_candidate("a", "無"),
            _make_candidate("b", "發票"),
            _make_candidate("c", "發票號碼"),
        ]
        best = score_and_pick_best(candidates, scorers)
        assert best is not None
        assert best.candidate.value == "b"

    def test_min_score_is_exclusive(self) -> None:
        candidates = [_make_candidate("a", "無")]
        scorers = [Scorer("label", 0.5, text_contains_any(["發票"]))]
        assert score_and_pick_best(candidates, scorers) is None
        assert score_and_pick_best(candidates, scorers, base=0.5) is not None

    def test_no_candidates(self) -> None:
        assert score_and_pick_best([], []) is None


class TestRules:
    """Tests for the reusable rule factories."""

    def test_leading_fraction(self) -> None:
        rule = in_leading_fraction(0.3)
        assert rule(_make_candidate(index=2, count=10))
        assert not rule(_make_candidate(index=3, count=10))

    def test_middle_band_is_strict(self) -> None:
        rule = in_middle_band(0.2, 0.8)
        assert not rule(_make_candidate(index=2, count=10))
        assert rule(_make_candidate(index=5, count=10))
        assert not rule(_make_candidate(index=8, count=10))

    def test_position(self) -> None:
        assert _make_candidate(index=5, count=10).position == 0.5
        assert _make_candidate(index=0, count=0).position == 0.0
