"""Shared test fixtures for the invoice field extraction test suite."""

from pathlib import Path

import numpy as np
import pytest

from invoice_ocr.ocr.tesseract_engine import LineBox, OCRLine, OCRResult
from invoice_ocr.utils.config import AppConfig, ClassificationConfig, ROIConfig


def make_line(
    text: str,
    y0: float | None = None,
    x0: float = 10.0,
    height: float = 20.0,
    width: float | None = None,
    confidence: float = 0.9,
    needs_review: bool = False,
) -> OCRLine:
    """Create an OCR line, with a box when ``y0`` is given."""
    bbox = None
    if y0 is not None:
        bbox = LineBox(
            x0=x0,
            y0=y0,
            x1=x0 + (width if width is not None else len(text) * 10),
            y1=y0 + height,
        )
    return OCRLine(
        text=text, confidence=confidence, needs_review=needs_review, bbox=bbox
    )


def make_ocr_result(lines: list[OCRLine], confidence: float = 0.9) -> OCRResult:
    """Wrap lines in an OCR result whose text is the lines joined."""
    return OCRResult(
        text="\n".join(line.text for line in lines), confidence=confidence, lines=lines
    )


@pytest.fixture
def invoice_lines() -> list[OCRLine]:
    """A small invoice laid out in four blocks of evenly spaced lines."""
    return [
        make_line("電子發票證明聯", 0),
        make_line("發票號碼：AB-12345678", 25),
        make_line("日期：2024-01-15", 50),
        make_line("賣方統編：12345678", 110),
        make_line("買方統編：87654321", 135),
        make_line("品名 數量 單價 金額", 195),
        make_line("咖啡 NT$600", 220),
        make_line("蛋糕 NT$400", 245),
        make_line("銷售額 NT$1,000", 305),
        make_line("稅額 NT$50", 330),
        make_line("合計 NT$1,050", 355),
    ]


@pytest.fixture
def invoice_ocr(invoice_lines: list[OCRLine]) -> OCRResult:
    return make_ocr_result(invoice_lines)


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic RGB page image."""
    image = np.zeros((800, 1000, 3), dtype=np.uint8)
    image[100:700, 100:900] = (255, 255, 255)
    return image


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Default configuration with its dictionaries stored under tmp_path."""
    return AppConfig(
        classification=ClassificationConfig(
            keywords_path=str(tmp_path / "classification_keywords.yaml")
        ),
        roi=ROIConfig(templates_path=str(tmp_path / "roi_templates.yaml")),
    )
