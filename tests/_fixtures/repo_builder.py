"""Helper utilities for constructing temporary source trees in tests."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Mapping

from autoscope.registry import ScanResult
from autoscope.repo_scanner import RepoScanner


class RepoBuilder:
    """Utility for writing files into a throwaway source tree and rescanning it."""

    def __init__(self, tmp_path: Path, **scanner_options: object) -> None:
        self.root = tmp_path / "repo"
        self.root.mkdir()
        self._scanner = RepoScanner(**scanner_options)  # type: ignore[arg-type]

    def write(self, files: Mapping[str, str]) -> None:
        """Write `path -> contents` entries into the tree."""
        for relative, content in files.items():
            path = self.root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            normalised = textwrap.dedent(content).lstrip("\n")
            path.write_text(normalised, encoding="utf-8")

    def write_bytes(self, relative: str, content: bytes) -> None:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    def scan(self) -> ScanResult:
        """Return a fresh scan of the tree."""
        return self._scanner.scan(self.root)

    def path(self) -> Path:
        """Return the tree root path."""
        return self.root


__all__ = ["RepoBuilder"]
