"""Core data models shared across autoscope components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple


@dataclass(frozen=True)
class SourceFile:
    """A file read from the scanned tree."""

    path: str
    language: str
    content: bytes


@dataclass(frozen=True)
class InstrumentedFunction:
    """A function carrying a metrics marker."""

    qualified_name: str
    module: str
    file: str
    line_start: int
    line_end: int
    language: str
    metric_names: Tuple[str, ...] = ()

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.qualified_name, self.file)

    @property
    def name(self) -> str:
        """Local function name without its module or type chain."""
        return self.qualified_name.rsplit(".", 1)[-1]


@dataclass(frozen=True)
class Diagnostic:
    """Recoverable problem recorded while scanning."""

    file: str
    code: str
    message: str
    line: Optional[int] = None

    def __str__(self) -> str:
        location = f"{self.file}:{self.line}" if self.line is not None else self.file
        return f"{location}: [{self.code}] {self.message}"


@dataclass(frozen=True)
class ScrapeTarget:
    """Engine scrape job derived from a registry snapshot."""

    job_name: str
    targets: Tuple[str, ...]
    metrics_path: str = "/metrics"
    scheme: Optional[str] = None
    metric_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Artifact:
    """A release asset resolved for one platform."""

    kind: str
    name: str
    version: str
    platform: str
    url: str
    digest: str


@dataclass(frozen=True)
class InstalledArtifact:
    """An artifact extracted into the versioned install tree."""

    kind: str
    version: str
    path: Path
    installed_at: datetime
    digest: str = ""


__all__ = [
    "Artifact",
    "Diagnostic",
    "InstalledArtifact",
    "InstrumentedFunction",
    "ScrapeTarget",
    "SourceFile",
]
