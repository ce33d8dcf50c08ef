"""Configuration management for the invoice field-extraction pipeline.

Settings live in a YAML file (``configs/config.yaml`` by default) and are
validated into pydantic models. Every section has defaults matching the
calibration the heuristics were tuned with, so a missing file is not an error.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class OCRConfig(BaseModel):
    """Configuration for the Tesseract collaborator."""

    tesseract_cmd: str | None = None
    default_lang: str = "chi_tra+eng"
    psm: int = 3
    roi_psm: int = 7
    low_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class LayoutConfig(BaseModel):
    """Calibration constants for geometric chunking."""

    vertical_spacing_threshold: float = 1.5
    horizontal_alignment_tolerance: float = 10.0
    min_chunk_lines: int = 1
    default_line_height: float = 20.0
    default_char_width: float = 10.0


class ClassificationConfig(BaseModel):
    """Where the document-type keyword dictionary is stored."""

    keywords_path: str = "configs/classification_keywords.yaml"


class ROIConfig(BaseModel):
    """Configuration for template-driven ROI extraction."""

    templates_path: str = "configs/roi_templates.yaml"
    max_workers: int = Field(default=4, ge=1)
    default_image_width: int = 800
    default_image_height: int = 600


class ExtractionConfig(BaseModel):
    """Configuration for the line-oriented keyword extractor."""

    amount_keywords: list[str] = Field(
        default_factory=lambda: ["金額", "小計", "合計", "總計", "銷售額", "稅額"]
    )


class ValidationConfig(BaseModel):
    """Configuration for arithmetic cross-checks."""

    tolerance: float = 1.0


class AppConfig(BaseModel):
    """Top-level application configuration."""

    ocr: OCRConfig = Field(default_factory=OCRConfig)
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    roi: ROIConfig = Field(default_factory=ROIConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration. Defaults are returned when the
        file does not exist or is empty.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
