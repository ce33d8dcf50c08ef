"""Tests for the FastAPI REST endpoints."""

import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from invoice_ocr.api.app import app
from invoice_ocr.ocr.tesseract_engine import OCRLine
from invoice_ocr.utils.serialization import to_plain


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """Create a FastAPI test client running in an empty directory."""
    monkeypatch.chdir(tmp_path)
    return TestClient(app)


def _make_test_image_bytes() -> bytes:
    """Create a minimal PNG image as bytes."""
    img = Image.fromarray(np.zeros((100, 200, 3), dtype=np.uint8))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _analyze_payload(lines: list[OCRLine]) -> dict:
    payload_lines = []
    for line in to_plain(lines):
        line["needsReview"] = line.pop("needs_review")
        payload_lines.append(line)
    return {
        "text": "\n".join(line.text for line in lines),
        "confidence": 0.9,
        "lines": payload_lines,
    }


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_returns_ok(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert isinstance(data["tesseract_available"], bool)


class TestTemplatesEndpoint:
    """Tests for the /templates endpoint."""

    def test_list_templates(self, client: TestClient) -> None:
        response = client.get("/templates")
        assert response.status_code == 200
        templates = {t["name"]: t for t in response.json()["templates"]}
        assert set(templates) == {"invoice", "utility", "labor_health"}
        assert templates["invoice"]["label"] == "發票"
        assert "totalAmount" in templates["invoice"]["fields"]


class TestAnalyzeEndpoint:
    """Tests for the /analyze endpoint."""

    def test_analyze_invoice(self, client: TestClient, invoice_lines: list[OCRLine]) -> None:
        response = client.post("/analyze", json=_analyze_payload(invoice_lines))
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["doc_type"] == "invoice"
        assert data["doc_type_label"] == "發票"
        assert data["fields"]["amounts"]["total"]["value"] == 1050
        assert data["roi_fields"]["doc_type"] == "invoice"
        assert data["validation"]["is_valid"] is True
        assert data["processing_time_ms"] >= 0

    def test_analyze_with_account(
        self, client: TestClient, invoice_lines: list[OCRLine]
    ) -> None:
        payload = _analyze_payload(invoice_lines)
        payload["account"] = {
            "active": {"username": "alice", "tax_id": "11111111"},
            "known_accounts": [
                {"username": "alice", "tax_id": "11111111"},
                {"username": "bob", "tax_id": "87654321"},
            ],
        }
        data = client.post("/analyze", json=payload).json()
        assert data["validation"]["is_valid"] is False
        assert "建議切換至帳號「bob」" in data["validation"]["warnings"]

    def test_analyze_empty(self, client: TestClient) -> None:
        response = client.post("/analyze", json={})
        assert response.status_code == 200
        data = response.json()
        assert data["doc_type"] == "other"
        assert data["chunks"] == []
        assert data["roi_fields"] is None

    def test_analyze_invalid_payload(self, client: TestClient) -> None:
        response = client.post("/analyze", json={"lines": "nope"})
        assert response.status_code == 422


class TestExtractEndpoint:
    """Tests for the /extract endpoint."""

    @patch("invoice_ocr.ocr.tesseract_engine.pytesseract")
    def test_extract_image(self, mock_pytesseract: MagicMock, client: TestClient) -> None:
        mock_pytesseract.image_to_string.return_value = "稅額 NT$5"
        mock_pytesseract.image_to_data.return_value = {
            "text": ["稅額", "NT$5"],
            "conf": [90, 90],
            "left": [10, 60],
            "top": [10, 10],
            "width": [40, 40],
            "height": [20, 20],
            "block_num": [1, 1],
            "par_num": [1, 1],
            "line_num": [1, 1],
        }
        mock_pytesseract.Output.DICT = "dict"

        response = client.post(
            "/extract",
            files={"file": ("page.png", _make_test_image_bytes(), "image/png")},
            params={"tax_id": "12345678"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["raw_text"] == "稅額 NT$5"
        assert data["extracted"]["amounts"][0]["keyword"] == "稅額"
        assert "未偵測到統一編號" in data["validation"]["details"]["統編核對"]["message"]

    def test_unsupported_file_type(self, client: TestClient) -> None:
        response = client.post(
            "/extract", files={"file": ("notes.txt", b"hello", "text/plain")}
        )
        assert response.status_code == 400
        assert "Unsupported file type" in response.json()["detail"]

    def test_unreadable_image(self, client: TestClient) -> None:
        response = client.post(
            "/extract", files={"file": ("page.png", b"not an image", "image/png")}
        )
        assert response.status_code == 400

    def test_processing_failure(self, client: TestClient) -> None:
        processor = MagicMock()
        processor.process_image.side_effect = RuntimeError("tesseract is not installed")
        with patch("invoice_ocr.api.app._get_processor", return_value=processor):
            response = client.post(
                "/extract",
                files={"file": ("page.png", _make_test_image_bytes(), "image/png")},
            )
        assert response.status_code == 500
        assert "tesseract" in response.json()["detail"]
