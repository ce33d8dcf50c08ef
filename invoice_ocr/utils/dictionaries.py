"""YAML-backed storage for user-editable keyword and template dictionaries."""

from pathlib import Path
from typing import Any

import yaml

from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)


class DictionaryStore:
    """Reads and writes one dictionary document on disk.

    Components that own a dictionary (classification keywords, ROI
    templates) load it through a store and fall back to their built-in
    defaults when :meth:`load` returns ``None``.

    Args:
        path: Location of the YAML document.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, Any] | None:
        """Return the stored dictionary, or ``None`` if nothing is stored."""
        if not self.path.exists():
            logger.debug("No dictionary at %s", self.path)
            return None
        with open(self.path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict) or not data:
            logger.debug("Dictionary at %s is empty", self.path)
            return None
        logger.info("Loaded dictionary from %s", self.path)
        return data

    def save(self, data: dict[str, Any]) -> None:
        """Persist ``data``, creating parent directories as needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
        logger.debug("Saved dictionary to %s", self.path)
