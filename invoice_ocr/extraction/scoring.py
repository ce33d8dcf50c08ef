"""Weighted-rule scoring used to pick the best candidate for a field slot.

Each detector describes its heuristics as a list of :class:`Scorer` rules
instead of ad hoc arithmetic, so every rule can be tested on its own and the
score breakdown of the winning candidate is available for diagnostics.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from invoice_ocr.ocr.layout_analyzer import Chunk


@dataclass(frozen=True)
class Candidate:
    """A possible value for a field slot, found in one chunk."""

    value: Any
    chunk: Chunk
    chunk_index: int
    chunk_count: int
    raw_value: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.chunk.text

    @property
    def position(self) -> float:
        """Relative chunk position in the document, in ``[0, 1)``."""
        return self.chunk_index / self.chunk_count if self.chunk_count else 0.0


@dataclass(frozen=True)
class Scorer:
    """A named rule contributing ``weight * rule(candidate)`` to a score.

    ``rule`` returns a bool for on/off evidence or a float in ``[0, 1]``
    for graded evidence such as OCR confidence.
    """

    name: str
    weight: float
    rule: Callable[[Candidate], bool | float]

    def __call__(self, candidate: Candidate) -> float:
        return self.weight * float(self.rule(candidate))


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate with its total score and per-rule contributions."""

    candidate: Candidate
    score: float
    breakdown: dict[str, float]

    @property
    def confidence(self) -> float:
        return max(0.0, min(self.score, 1.0))


def score_candidate(
    candidate: Candidate, scorers: Iterable[Scorer], base: float = 0.0
) -> ScoredCandidate:
    breakdown = {scorer.name: scorer(candidate) for scorer in scorers}
    return ScoredCandidate(
        candidate=candidate, score=base + sum(breakdown.values()), breakdown=breakdown
    )


def score_and_pick_best(
    candidates: Iterable[Candidate],
    scorers: list[Scorer],
    base: float = 0.0,
    min_score: float = 0.0,
) -> ScoredCandidate | None:
    """Score every candidate and return the best one.

    Ties keep the earliest candidate. Only candidates scoring strictly above
    ``min_score`` are eligible.

    Args:
        candidates: Candidates in document order.
        scorers: Weighted rules applied to every candidate.
        base: Score every candidate starts from.
        min_score: Exclusive lower bound for the winning score.

    Returns:
        The winning scored candidate, or ``None`` if none is eligible.
    """
    best: ScoredCandidate | None = None
    for candidate in candidates:
        scored = score_candidate(candidate, scorers, base)
        if scored.score <= min_score:
            continue
        if best is None or scored.score > best.score:
            best = scored
    return best


def in_leading_fraction(fraction: float) -> Callable[[Candidate], bool]:
    """Rule: the candidate's chunk lies in the first ``fraction`` of chunks."""

    def rule(candidate: Candidate) -> bool:
        return candidate.chunk_index < candidate.chunk_count * fraction

    return rule


def in_middle_band(lower: float, upper: float) -> Callable[[Candidate], bool]:
    """Rule: the candidate's chunk lies strictly between two position marks."""

    def rule(candidate: Candidate) -> bool:
        return (
            candidate.chunk_count * lower
            < candidate.chunk_index
            < candidate.chunk_count * upper
        )

    return rule


def text_contains_any(keywords: Iterable[str]) -> Callable[[Candidate], bool]:
    keywords = tuple(keywords)

    def rule(candidate: Candidate) -> bool:
        return any(kw in candidate.text for kw in keywords)

    return rule


def chunk_ocr_confidence(candidate: Candidate) -> float:
    return candidate.chunk.mean_confidence
