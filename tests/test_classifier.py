"""Tests for keyword-based document classification."""

from pathlib import Path

import pytest

from invoice_ocr.extraction.document_classifier import (
    DEFAULT_KEYWORDS,
    DocumentClassifier,
    DocumentType,
    normalize_text,
)
from invoice_ocr.utils.dictionaries import DictionaryStore

_INVOICE_TEXT = "電子發票證明聯\n發票號碼：AB-12345678\n賣方統編 12345678\n稅額 50"
_UTILITY_TEXT = "台灣電力公司 電費通知單\n電號 01-23-4567-89\n用電度數 320 度\n繳費期限 2024/02/10"
_LABOR_TEXT = "勞工保險 全民健康保險 保險費繳款書\n投保單位 被保險人 12 人"


class TestDocumentClassifier:
    """Tests for the DocumentClassifier class."""

    def setup_method(self) -> None:
        self.classifier = DocumentClassifier()

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            (_INVOICE_TEXT, DocumentType.INVOICE),
            (_UTILITY_TEXT, DocumentType.UTILITY),
            (_LABOR_TEXT, DocumentType.LABOR_HEALTH),
        ],
    )
    def test_classify_types(self, text: str, expected: DocumentType) -> None:
        result = self.classifier.classify(text)
        assert result.doc_type == expected
        assert 0.0 < result.confidence <= 1.0
        assert result.matched_keywords

    @pytest.mark.parametrize("text", ["", None, 42, "，。！？", "   \n"])
    def test_unclassifiable_input(self, text: object) -> None:
        result = self.classifier.classify(text)
        assert result.doc_type == DocumentType.OTHER
        assert result.confidence == 0.0
        assert result.matched_keywords == []

    def test_scores_cover_every_type(self) -> None:
        result = self.classifier.classify(_INVOICE_TEXT)
        assert set(result.scores) == {"invoice", "utility", "labor_health"}

    def test_whitespace_insensitive(self) -> None:
        spaced = self.classifier.classify("統 一 發 票\n稅  額")
        compact = self.classifier.classify("統一發票稅額")
        assert spaced == compact

    def test_repeated_keyword_counts_logarithmically(self) -> None:
        classifier = DocumentClassifier(
            keywords={"invoice": {"keywords": ["發票"], "weight": 1.0}}
        )
        result = classifier.classify("發票 發票 發票")
        assert result.matched_keywords[0].occurrences == 3
        assert result.scores["invoice"] == pytest.approx(1 + 1.0986, abs=1e-3)

    def test_invalid_regex_keyword_matched_literally(self) -> None:
        classifier = DocumentClassifier(
            keywords={"utility": {"keywords": ["電費("], "weight": 1.0}}
        )
        assert classifier.classify("本月電費(含稅)").doc_type == "utility"

    def test_regex_keyword(self) -> None:
        classifier = DocumentClassifier(
            keywords={"utility": {"keywords": [r"電號\d+"], "weight": 1.0}}
        )
        assert classifier.classify("電號 0123").doc_type == "utility"

    def test_calculate_confidence(self) -> None:
        assert DocumentClassifier.calculate_confidence(0.0, {"a": 0.0}) == 0.0
        assert DocumentClassifier.calculate_confidence(
            1.0, {"a": 1.0, "b": 1.0}
        ) == pytest.approx(0.6)
        assert DocumentClassifier.calculate_confidence(5.0, {"a": 5.0, "b": 0.0}) == 1.0

    def test_classification_confidence_for_losing_type(self) -> None:
        result = self.classifier.classify(_INVOICE_TEXT)
        share = self.classifier.classification_confidence(_INVOICE_TEXT, "utility")
        total = sum(result.scores.values())
        assert share == pytest.approx(result.scores["utility"] / total)
        assert self.classifier.classification_confidence(
            _INVOICE_TEXT, "invoice"
        ) == pytest.approx(result.confidence)

    def test_classify_batch(self) -> None:
        results = self.classifier.classify_batch([_INVOICE_TEXT, ""])
        assert [r.doc_type for r in results] == ["invoice", "other"]

    def test_doc_type_label(self) -> None:
        assert DocumentClassifier.doc_type_label("invoice") == "發票"
        assert DocumentClassifier.doc_type_label("nope") == "未知"

    def test_to_dict(self) -> None:
        data = self.classifier.classify(_INVOICE_TEXT).to_dict()
        assert data["doc_type"] == "invoice"
        assert {"keyword", "occurrences"} <= set(data["matched_keywords"][0])


class TestCustomKeywords:
    """Tests for editing and persisting the keyword dictionary."""

    def test_add_custom_keywords_skips_duplicates(self) -> None:
        classifier = DocumentClassifier()
        added = classifier.add_custom_keywords("invoice", ["收據", "收據", "發票"])
        assert added == 1
        assert "收據" in classifier.get_all_keywords()["invoice"]["keywords"]

    def test_add_to_unknown_type(self) -> None:
        assert DocumentClassifier().add_custom_keywords("receipt", ["x"]) == 0

    def test_defaults_not_mutated(self) -> None:
        classifier = DocumentClassifier()
        classifier.add_custom_keywords("utility", ["天然氣"])
        assert "天然氣" not in DEFAULT_KEYWORDS["utility"]["keywords"]

    def test_reset_to_default(self) -> None:
        classifier = DocumentClassifier()
        classifier.add_custom_keywords("utility", ["天然氣"])
        classifier.reset_to_default()
        assert classifier.get_all_keywords() == DEFAULT_KEYWORDS

    def test_defaults_saved_to_empty_store(self, tmp_path: Path) -> None:
        store = DictionaryStore(tmp_path / "keywords.yaml")
        DocumentClassifier(store=store)
        assert store.load() == DEFAULT_KEYWORDS

    def test_custom_keywords_persist(self, tmp_path: Path) -> None:
        store = DictionaryStore(tmp_path / "keywords.yaml")
        DocumentClassifier(store=store).add_custom_keywords("utility", ["天然氣"])

        reloaded = DocumentClassifier(store=store)
        assert "天然氣" in reloaded.get_all_keywords()["utility"]["keywords"]
        assert reloaded.classify("天然氣 使用量").doc_type == "utility"


def test_normalize_text() -> None:
    assert normalize_text(" A b\tC\n ") == "abc"
