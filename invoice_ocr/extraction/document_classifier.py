"""Document-type classification from raw OCR text.

Scores the text against per-type keyword dictionaries (invoice, utility bill,
labor/health insurance bill) and picks the best-scoring type. The keyword
dictionary is user-editable and persisted through a :class:`DictionaryStore`;
the scoring function itself is fixed.
"""

import copy
import math
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from invoice_ocr.utils.dictionaries import DictionaryStore
from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_SIGMOID_STEEPNESS = 10.0
_MAX_SCORE_BONUS = 0.2


class DocumentType(StrEnum):
    """Built-in document types."""

    INVOICE = "invoice"
    UTILITY = "utility"
    LABOR_HEALTH = "labor_health"
    OTHER = "other"


DOC_TYPE_LABELS: dict[str, str] = {
    DocumentType.INVOICE: "發票",
    DocumentType.UTILITY: "水電單",
    DocumentType.LABOR_HEALTH: "勞健保繳費單",
    DocumentType.OTHER: "其他",
}

DEFAULT_KEYWORDS: dict[str, dict[str, Any]] = {
    DocumentType.INVOICE.value: {
        "keywords": [
            "統一發票", "發票號碼", "發票字軌", "稅額", "營業稅",
            "買受人", "賣方", "銷售額", "應稅銷售額", "免稅銷售額",
            "課稅別", "發票", "統編", "買方統編", "賣方統編",
        ],
        "weight": 1.0,
    },
    DocumentType.UTILITY.value: {
        "keywords": [
            "電號", "用電度數", "水號", "本期", "繳費期限",
            "電費", "水費", "台電", "自來水", "用電", "用水",
            "度數", "本期應繳", "電力公司", "水公司", "瓦斯費",
        ],
        "weight": 1.0,
    },
    DocumentType.LABOR_HEALTH.value: {
        "keywords": [
            "勞保", "健保", "投保薪資", "保險費", "被保險人",
            "保險證號", "繳款書", "勞工保險", "全民健康保險",
            "勞保局", "健保局", "保費", "投保單位", "保險費合計",
        ],
        "weight": 1.0,
    },
    DocumentType.OTHER.value: {"keywords": [], "weight": 0.0},
}


@dataclass(frozen=True)
class KeywordMatch:
    keyword: str
    occurrences: int


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one document's text."""

    doc_type: str
    confidence: float
    matched_keywords: list[KeywordMatch] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_type": self.doc_type,
            "confidence": self.confidence,
            "matched_keywords": [
                {"keyword": m.keyword, "occurrences": m.occurrences}
                for m in self.matched_keywords
            ],
            "scores": dict(self.scores),
        }


def normalize_text(text: str) -> str:
    """Remove all whitespace and lower-case."""
    return _WHITESPACE_RE.sub("", text).lower()


def _compile_keyword(keyword: str) -> re.Pattern[str] | None:
    normalized = normalize_text(keyword)
    if not normalized:
        return None
    try:
        pattern = re.compile(normalized)
    except re.error:
        pattern = re.compile(re.escape(normalized))
    if pattern.fullmatch(""):
        return None
    return pattern


class DocumentClassifier:
    """Keyword-dictionary document classifier.

    Args:
        keywords: Dictionary ``{doc_type: {"keywords": [...], "weight": w}}``.
            Takes precedence over the store.
        store: Persistent location of the dictionary. When it holds nothing,
            the built-in defaults are used and written back to it.
    """

    def __init__(
        self,
        keywords: dict[str, dict[str, Any]] | None = None,
        store: DictionaryStore | None = None,
    ) -> None:
        self.store = store
        if keywords is not None:
            self.keywords = copy.deepcopy(keywords)
        else:
            self.keywords = self._load_keywords()

    def _load_keywords(self) -> dict[str, dict[str, Any]]:
        if self.store is not None:
            stored = self.store.load()
            if stored:
                return stored
        keywords = self.get_default_keywords()
        if self.store is not None:
            logger.info("No stored keywords, saving defaults to %s", self.store.path)
            self.store.save(keywords)
        return keywords

    @staticmethod
    def get_default_keywords() -> dict[str, dict[str, Any]]:
        return copy.deepcopy(DEFAULT_KEYWORDS)

    def classify(self, text: Any) -> ClassificationResult:
        """Classify OCR text into a document type.

        Never raises: empty or non-string input yields ``other`` with
        confidence 0.

        Args:
            text: Raw OCR text.

        Returns:
            Winning type, its confidence, the keywords it matched and the
            raw score of every type.
        """
        candidate_types = [t for t in self.keywords if t != DocumentType.OTHER]
        zero_scores = {t: 0.0 for t in candidate_types}

        if not text or not isinstance(text, str):
            return ClassificationResult(DocumentType.OTHER.value, 0.0, [], zero_scores)

        normalized = normalize_text(text)
        scores: dict[str, float] = {}
        matches: dict[str, list[KeywordMatch]] = {}

        for doc_type in candidate_types:
            config = self.keywords.get(doc_type) or {}
            weight = float(config.get("weight", 1.0))
            score = 0.0
            matched: list[KeywordMatch] = []
            for keyword in config.get("keywords") or []:
                pattern = _compile_keyword(str(keyword))
                if pattern is None:
                    continue
                occurrences = len(pattern.findall(normalized))
                if occurrences > 0:
                    score += (1 + math.log(occurrences)) * weight
                    matched.append(KeywordMatch(str(keyword), occurrences))
            scores[doc_type] = score
            matches[doc_type] = matched

        best_type = DocumentType.OTHER.value
        best_score = 0.0
        for doc_type, score in scores.items():
            if score > best_score:
                best_type, best_score = doc_type, score

        if best_score == 0:
            return ClassificationResult(DocumentType.OTHER.value, 0.0, [], scores)

        confidence = self.calculate_confidence(best_score, scores)
        logger.debug(
            "Classified as %s (confidence=%.2f, scores=%s)", best_type, confidence, scores
        )
        return ClassificationResult(best_type, confidence, matches[best_type], scores)

    @staticmethod
    def calculate_confidence(best_score: float, all_scores: dict[str, float]) -> float:
        """Blend the winner's share of the total score with its magnitude.

        A sigmoid of the share (centred at 0.5) plus a bonus of up to 0.2
        for a high absolute score, capped at 1.0.
        """
        total = sum(all_scores.values())
        if total == 0:
            return 0.0
        ratio = best_score / total
        confidence = 1 / (1 + math.exp(-_SIGMOID_STEEPNESS * (ratio - 0.5)))
        bonus = min(best_score / 10, _MAX_SCORE_BONUS)
        return min(confidence + bonus, 1.0)

    def classification_confidence(self, text: Any, doc_type: str) -> float:
        """Confidence that ``text`` is of ``doc_type``.

        When another type wins, this is ``doc_type``'s share of the total
        score instead.
        """
        result = self.classify(text)
        if result.doc_type == doc_type:
            return result.confidence
        score = result.scores.get(doc_type, 0.0)
        total = sum(result.scores.values())
        return score / total if total > 0 and score else 0.0

    def classify_batch(self, texts: list[Any]) -> list[ClassificationResult]:
        return [self.classify(text) for text in texts]

    def add_custom_keywords(self, doc_type: str, keywords: list[str]) -> int:
        """Append keywords to a type's dictionary, skipping duplicates.

        Returns:
            Number of keywords actually added. Unknown types add nothing.
        """
        if doc_type not in self.keywords:
            logger.warning("Unknown document type: %s", doc_type)
            return 0

        existing = self.keywords[doc_type].setdefault("keywords", [])
        added = [kw for kw in dict.fromkeys(keywords) if kw not in existing]
        existing.extend(added)
        self._save()
        logger.info("Added %d keywords to %s", len(added), doc_type)
        return len(added)

    def reset_to_default(self) -> None:
        self.keywords = self.get_default_keywords()
        self._save()

    def get_all_keywords(self) -> dict[str, dict[str, Any]]:
        return self.keywords

    @staticmethod
    def doc_type_label(doc_type: str) -> str:
        return DOC_TYPE_LABELS.get(doc_type, "未知")

    def _save(self) -> None:
        if self.store is not None:
            self.store.save(self.keywords)
