"""Canonical registry of instrumented functions and its aggregation."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import DuplicateNameError
from .logging import get_logger
from .models import Diagnostic, InstrumentedFunction, ScrapeTarget
from .scanners import ScanItem
from .scrape import derive_targets

_RECORD_FIELDS = (
    "qualifiedName",
    "module",
    "file",
    "lineStart",
    "lineEnd",
    "language",
    "metricNames",
)


def _sort_key(function: InstrumentedFunction) -> Tuple[str, int, str]:
    return (function.file, function.line_start, function.qualified_name)


@dataclass(frozen=True)
class Registry:
    """Deduplicated, ordered snapshot of one scan."""

    functions: Tuple[InstrumentedFunction, ...] = ()

    def __iter__(self) -> Iterator[InstrumentedFunction]:
        return iter(self.functions)

    def __len__(self) -> int:
        return len(self.functions)

    def lookup(self, qualified_name: str) -> List[InstrumentedFunction]:
        """Every entry with ``qualified_name``; distinct files may share a name."""
        return [function for function in self.functions if function.qualified_name == qualified_name]

    def metric_names(self) -> Tuple[str, ...]:
        names = {name for function in self.functions for name in function.metric_names}
        return tuple(sorted(names))

    def modules(self) -> Tuple[str, ...]:
        return tuple(sorted({function.module for function in self.functions}))

    def to_records(self) -> List[Dict[str, object]]:
        return [
            {
                "qualifiedName": function.qualified_name,
                "module": function.module,
                "file": function.file,
                "lineStart": function.line_start,
                "lineEnd": function.line_end,
                "language": function.language,
                "metricNames": list(function.metric_names),
            }
            for function in self.functions
        ]

    def to_json(self) -> str:
        return json.dumps(self.to_records(), indent=2, ensure_ascii=False) + "\n"

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, object]]) -> "Registry":
        functions = []
        for record in records:
            missing = [name for name in _RECORD_FIELDS if name not in record]
            if missing:
                raise ValueError(f"Registry record missing fields: {', '.join(missing)}")
            functions.append(
                InstrumentedFunction(
                    qualified_name=str(record["qualifiedName"]),
                    module=str(record["module"]),
                    file=str(record["file"]),
                    line_start=int(record["lineStart"]),  # type: ignore[arg-type]
                    line_end=int(record["lineEnd"]),  # type: ignore[arg-type]
                    language=str(record["language"]),
                    metric_names=tuple(str(name) for name in record["metricNames"]),  # type: ignore[union-attr]
                )
            )
        return cls(tuple(sorted(functions, key=_sort_key)))

    def scrape_targets(self, endpoints: Sequence[str]) -> List[ScrapeTarget]:
        """Project the registry onto scrape jobs for the given metrics endpoints."""
        return derive_targets(self, endpoints)


@dataclass(frozen=True)
class ScanResult:
    """A registry plus the diagnostics accumulated while building it."""

    registry: Registry = field(default_factory=Registry)
    diagnostics: Tuple[Diagnostic, ...] = ()
    files_scanned: int = 0

    @property
    def ok(self) -> bool:
        return not self.diagnostics


class ScanAggregator:
    """Single synchronisation point for results produced by concurrent file scans."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._candidates: List[InstrumentedFunction] = []
        self._diagnostics: List[Diagnostic] = []
        self._files = 0

    def add(self, items: Iterable[ScanItem]) -> None:
        """Record the complete output of one file."""
        functions: List[InstrumentedFunction] = []
        diagnostics: List[Diagnostic] = []
        for item in items:
            if isinstance(item, Diagnostic):
                diagnostics.append(item)
            else:
                functions.append(item)
        with self._lock:
            self._candidates.extend(functions)
            self._diagnostics.extend(diagnostics)
            self._files += 1

    def add_diagnostic(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self._diagnostics.append(diagnostic)
            self._files += 1

    def build(self) -> ScanResult:
        with self._lock:
            candidates = sorted(self._candidates, key=_sort_key)
            diagnostics = list(self._diagnostics)
            files = self._files

        kept: Dict[Tuple[str, str], InstrumentedFunction] = {}
        for function in candidates:
            first = kept.get(function.identity)
            if first is None:
                kept[function.identity] = function
                continue
            error = DuplicateNameError(function.qualified_name, function.file, first.line_start, function.line_start)
            diagnostics.append(
                Diagnostic(
                    file=function.file,
                    line=first.line_start,
                    code="duplicate-name",
                    message=f"'{function.qualified_name}' is declared more than once (also line {function.line_start})",
                )
            )
            diagnostics.append(
                Diagnostic(file=function.file, line=function.line_start, code="duplicate-name", message=str(error))
            )

        diagnostics.sort(key=lambda item: (item.file, item.line or 0, item.code, item.message))
        registry = Registry(tuple(sorted(kept.values(), key=_sort_key)))
        return ScanResult(registry=registry, diagnostics=tuple(diagnostics), files_scanned=files)


Listener = Callable[[ScanResult], None]


class RegistryStore:
    """Holds the latest published scan; readers never see a partial registry."""

    def __init__(self, initial: Optional[ScanResult] = None) -> None:
        self._lock = threading.Lock()
        self._current = initial or ScanResult()
        self._listeners: List[Listener] = []
        self.logger = get_logger("registry")

    def current(self) -> ScanResult:
        with self._lock:
            return self._current

    @property
    def registry(self) -> Registry:
        return self.current().registry

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def publish(self, result: ScanResult) -> ScanResult:
        """Swap in ``result`` and notify listeners when the registry changed."""
        with self._lock:
            previous = self._current
            self._current = result
            listeners = list(self._listeners)
        self.logger.debug(
            "Published registry with %d function(s), %d diagnostic(s)",
            len(result.registry),
            len(result.diagnostics),
        )
        if previous.registry != result.registry:
            for listener in listeners:
                listener(result)
        return previous


__all__ = ["Registry", "RegistryStore", "ScanAggregator", "ScanResult"]
