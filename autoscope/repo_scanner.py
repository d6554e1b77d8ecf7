"""Source tree walking and parallel marker scanning."""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import ScanError
from .logging import get_logger
from .models import Diagnostic, SourceFile
from .registry import ScanAggregator, ScanResult
from .scanners import ScanItem, detect_language, scanner_for

GITIGNORE = ".gitignore"

_EXCLUDED_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".idea",
    ".autoscope",
    "target",
    "dist",
    "vendor",
}


@dataclass(frozen=True)
class IgnoreRule:
    """A .gitignore-style pattern scoped to the directory that declared it."""

    pattern: str
    base: str = ""
    negate: bool = False
    directory_only: bool = False
    anchored: bool = False

    @classmethod
    def parse(cls, line: str, base: str = "") -> Optional["IgnoreRule"]:
        text = line.strip()
        if not text or text.startswith("#"):
            return None
        negate = text.startswith("!")
        if negate:
            text = text[1:]
        directory_only = text.endswith("/")
        text = text.rstrip("/")
        # A slash anywhere but the end pins the pattern to its base directory.
        anchored = "/" in text
        text = text.lstrip("/")
        if not text:
            return None
        return cls(text, base, negate, directory_only, anchored)

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        if self.directory_only and not is_dir:
            return False
        if self.base:
            prefix = f"{self.base}/"
            if not rel_path.startswith(prefix):
                return False
            rel_path = rel_path[len(prefix):]
        if self.anchored:
            return fnmatchcase(rel_path, self.pattern)
        # Parents are pruned during the walk, so only the last segment is left to test.
        return fnmatchcase(rel_path.rsplit("/", 1)[-1], self.pattern)


def _read_ignore_file(path: Path, base: str) -> List[IgnoreRule]:
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return []
    rules = (IgnoreRule.parse(line, base) for line in lines)
    return [rule for rule in rules if rule is not None]


def _verdict(rel_path: str, is_dir: bool, rules: Sequence[IgnoreRule]) -> bool:
    ignored = False
    for rule in rules:
        if rule.matches(rel_path, is_dir):
            ignored = not rule.negate
    return ignored


def _ignored(rel_path: str, is_dir: bool, *rule_sets: Sequence[IgnoreRule]) -> bool:
    return any(_verdict(rel_path, is_dir, rules) for rules in rule_sets)


def _iter_files(root: Path, excluded: Sequence[IgnoreRule]) -> Iterator[Tuple[str, str]]:
    """Yield ``(relative path, language)`` for every scannable file under ``root``.

    Each directory's own ``.gitignore`` applies to it and everything below it.
    ``excluded`` applies everywhere and cannot be negated by a ``.gitignore``.
    """
    pending: Dict[str, List[IgnoreRule]] = {"": []}
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir
        active = pending.pop(rel_dir, [])
        if GITIGNORE in filenames:
            active = active + _read_ignore_file(Path(dirpath) / GITIGNORE, rel_dir)

        kept_dirs = []
        for name in sorted(dirnames):
            rel_path = f"{rel_dir}/{name}" if rel_dir else name
            if name in _EXCLUDED_DIRS or _ignored(rel_path, True, active, excluded):
                continue
            kept_dirs.append(name)
            pending[rel_path] = active
        dirnames[:] = kept_dirs

        for filename in sorted(filenames):
            rel_path = f"{rel_dir}/{filename}" if rel_dir else filename
            language = detect_language(rel_path)
            if language is None or _ignored(rel_path, False, active, excluded):
                continue
            yield rel_path, language


def _scan_file(root: Path, rel_path: str, language: str) -> List[ScanItem]:
    """Scan one file; a file-level failure becomes a single diagnostic."""
    try:
        try:
            content = (root / rel_path).read_bytes()
        except OSError as exc:
            raise ScanError(rel_path, f"unreadable: {exc.strerror or exc}") from exc
        source = SourceFile(path=rel_path, language=language, content=content)
        return list(scanner_for(language).scan(source))
    except ScanError as exc:
        return [Diagnostic(file=rel_path, code="scan-error", message=exc.message)]


class RepoScanner:
    """Walks a source tree and builds a registry of instrumented functions."""

    def __init__(
        self,
        *,
        exclude_paths: Sequence[str] = (),
        max_workers: Optional[int] = None,
    ) -> None:
        self.exclude_paths = list(exclude_paths)
        self.max_workers = max_workers or min(32, (os.cpu_count() or 1) + 4)
        self.logger = get_logger("scanner")

    def files(self, root: str | Path) -> List[Tuple[str, str]]:
        root_path = self._resolve_root(root)
        return list(_iter_files(root_path, self._excluded()))

    def scan(self, root: str | Path) -> ScanResult:
        """Return a fresh scan result for the tree rooted at ``root``."""
        root_path = self._resolve_root(root)
        files = list(_iter_files(root_path, self._excluded()))
        self.logger.debug("Scanning %d candidate file(s) under %s", len(files), root_path)

        aggregator = ScanAggregator()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="autoscope-scan") as pool:
            futures = [pool.submit(_scan_file, root_path, rel_path, language) for rel_path, language in files]
            for future in futures:
                aggregator.add(future.result())

        result = aggregator.build()
        self.logger.info(
            "Found %d instrumented function(s) in %d file(s)",
            len(result.registry),
            result.files_scanned,
        )
        for diagnostic in result.diagnostics:
            self.logger.warning("%s", diagnostic)
        return result

    def _excluded(self) -> List[IgnoreRule]:
        rules = (IgnoreRule.parse(pattern) for pattern in self.exclude_paths)
        return [rule for rule in rules if rule is not None]

    @staticmethod
    def _resolve_root(root: str | Path) -> Path:
        root_path = Path(root).expanduser().resolve()
        if not root_path.exists():
            raise FileNotFoundError(f"Source path not found: {root}")
        if not root_path.is_dir():
            raise NotADirectoryError(f"Source path is not a directory: {root}")
        return root_path


__all__ = ["IgnoreRule", "RepoScanner"]
