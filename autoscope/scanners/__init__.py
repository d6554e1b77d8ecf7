"""Per-language marker scanners and the dispatch table that selects them."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Dict, Optional

from .base import LanguageScanner, ScanItem, metric_names, sanitize_metric_name
from .golang import GoScanner
from .python import PythonScanner
from .rust import RustScanner
from .typescript import TypeScriptScanner

SCANNERS: Dict[str, LanguageScanner] = {
    "python": PythonScanner(),
    "typescript": TypeScriptScanner(),
    "go": GoScanner(),
    "rust": RustScanner(),
}

_BY_EXTENSION: Dict[str, str] = {
    extension: language
    for language, scanner in SCANNERS.items()
    for extension in scanner.extensions
}


def detect_language(path: str) -> Optional[str]:
    """Return the language tag handling ``path``, or None when unsupported."""
    suffix = PurePosixPath(path).suffix.lower()
    if path.lower().endswith(".d.ts"):
        return None
    return _BY_EXTENSION.get(suffix)


def scanner_for(language: str) -> LanguageScanner:
    try:
        return SCANNERS[language]
    except KeyError:
        raise ValueError(f"No scanner registered for language '{language}'") from None


__all__ = [
    "SCANNERS",
    "LanguageScanner",
    "ScanItem",
    "detect_language",
    "metric_names",
    "sanitize_metric_name",
    "scanner_for",
]
