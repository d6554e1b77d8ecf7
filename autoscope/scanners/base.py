"""Shared contract and text helpers for language scanners."""

from __future__ import annotations

import re
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple, Union

from ..errors import MarkerError, ScanError
from ..models import Diagnostic, InstrumentedFunction, SourceFile

BASE_METRIC = "function_calls"

ScanItem = Union[InstrumentedFunction, Diagnostic]


class LanguageScanner(Protocol):
    """Recognises metrics markers in a single source file."""

    language: str
    extensions: Tuple[str, ...]

    def scan(self, source: SourceFile) -> Iterator[ScanItem]:
        """Yield instrumented functions and per-function diagnostics.

        Raises ``ScanError`` when the file as a whole cannot be decoded or parsed.
        """
        ...


def decode(source: SourceFile) -> str:
    """Return the file content as text, raising ``ScanError`` for non UTF-8 input."""
    try:
        text = source.content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ScanError(source.path, f"not valid UTF-8 ({exc.reason} at byte {exc.start})") from exc
    return text[1:] if text.startswith("\ufeff") else text


def marker_diagnostic(error: MarkerError) -> Diagnostic:
    return Diagnostic(file=error.file, line=error.line, code="marker-error", message=error.message)


def line_of(text: str, index: int) -> int:
    """Return 1-based line number for a character index."""
    return text.count("\n", 0, index) + 1


_METRIC_INVALID = re.compile(r"[^a-z0-9_:]")


def sanitize_metric_name(raw: str) -> str:
    """Normalise a user supplied metric base name to Prometheus conventions."""
    cleaned = _METRIC_INVALID.sub("_", raw.strip().lower())
    cleaned = re.sub(r"_{2,}", "_", cleaned).strip("_")
    if not cleaned:
        raise ValueError(f"metric name {raw!r} is empty after sanitisation")
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def metric_names(rename: Optional[str] = None, *, track_concurrency: bool = False) -> Tuple[str, ...]:
    """Derive the series a marker emits."""
    base = sanitize_metric_name(rename) if rename is not None else BASE_METRIC
    names = [f"{base}_total", f"{base}_duration_seconds"]
    if track_concurrency:
        names.append(f"{base}_concurrent")
    return tuple(names)


def module_from_path(path: str, collapse: Iterable[str] = ()) -> str:
    """Turn a relative file path into a dotted module name.

    Segments up to and including the last ``src`` directory are dropped and a
    trailing segment listed in ``collapse`` (``__init__``, ``mod``, ``index``)
    folds into its parent.
    """
    parts = path.split("/")
    stem = parts[-1].split(".", 1)[0]
    parts = parts[:-1] + [stem]
    if "src" in parts[:-1]:
        last_src = len(parts) - 1 - parts[::-1].index("src", 1)
        parts = parts[last_src + 1 :]
    if parts and parts[-1] in set(collapse):
        parts = parts[:-1]
    return ".".join(part.replace("-", "_") for part in parts if part)


def qualify(module: str, chain: Sequence[str], name: str) -> str:
    return ".".join(part for part in (module, *chain, name) if part)


# ---------------------------------------------------------------------------
# Brace-language helpers
# ---------------------------------------------------------------------------


def blank(text: str, pattern: re.Pattern[str]) -> str:
    """Replace comments and literals matched by ``pattern`` with spaces.

    Offsets and line breaks are preserved so positions found in the blanked
    text index straight back into the original.
    """
    return pattern.sub(lambda match: re.sub(r"[^\n]", " ", match.group(0)), text)


def match_delimiter(text: str, open_index: int, opening: str = "{", closing: str = "}") -> int:
    """Return the index of the delimiter closing the one at ``open_index`` or -1."""
    depth = 0
    for index in range(open_index, len(text)):
        char = text[index]
        if char == opening:
            depth += 1
        elif char == closing:
            depth -= 1
            if depth == 0:
                return index
    return -1


def bracket_depths(code: str) -> List[int]:
    """Nesting depth of (), [] and {} at every offset of ``code``."""
    depths: List[int] = []
    depth = 0
    for char in code:
        if char in ")]}":
            depth -= 1
        depths.append(depth)
        if char in "([{":
            depth += 1
    return depths


def scope_chain(scopes: Sequence[Tuple[str, int, int]], position: int) -> list[str]:
    """Names of the ``(name, start, end)`` scopes enclosing ``position``, outermost first."""
    enclosing = [scope for scope in scopes if scope[1] < position < scope[2]]
    enclosing.sort(key=lambda scope: scope[1])
    return [name for name, _, _ in enclosing]


def split_top_level(text: str, separator: str = ",") -> list[str]:
    """Split ``text`` on ``separator`` ignoring nested brackets and quoted strings."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    quote: Optional[str] = None
    escaped = False
    for char in text:
        if quote is not None:
            current.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in "\"'`":
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif char == separator and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


_STRING_LITERAL = re.compile(r"""^(?P<q>["'`])(?P<body>(?:\\.|(?!(?P=q)).)*)(?P=q)$""", re.DOTALL)


def string_literal(value: str) -> Optional[str]:
    """Return the body of a quoted literal, or None when ``value`` is not one."""
    match = _STRING_LITERAL.match(value.strip())
    if not match:
        return None
    return match.group("body")


__all__ = [
    "BASE_METRIC",
    "LanguageScanner",
    "ScanItem",
    "blank",
    "bracket_depths",
    "decode",
    "line_of",
    "marker_diagnostic",
    "match_delimiter",
    "metric_names",
    "module_from_path",
    "qualify",
    "sanitize_metric_name",
    "scope_chain",
    "split_top_level",
    "string_literal",
]
