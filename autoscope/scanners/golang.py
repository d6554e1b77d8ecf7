"""Go marker recognition for ``//autometrics:inst`` directives."""

from __future__ import annotations

import re
import shlex
from typing import Iterator, List, Optional, Tuple

from .base import (
    ScanItem,
    blank,
    decode,
    line_of,
    marker_diagnostic,
    match_delimiter,
    metric_names,
    qualify,
)
from ..errors import MarkerError, ScanError
from ..models import InstrumentedFunction, SourceFile

_NOISE = re.compile(
    r"//[^\n]*"
    r"|/\*.*?\*/"
    r"|\"(?:\\.|[^\"\\\n])*\""
    r"|`[^`]*`"
    r"|'(?:\\[^'\n]{1,10}|[^'\\\n])'",
    re.DOTALL,
)
_PACKAGE = re.compile(r"^\s*package\s+(?P<name>[A-Za-z_]\w*)", re.MULTILINE)
_DIRECTIVE = re.compile(r"^[ \t]*//autometrics:(?:inst|doc)\b(?P<args>[^\n]*)$", re.MULTILINE)
_FUNC = re.compile(
    r"func\s*(?:\((?P<receiver>[^)]*)\)\s*)?(?P<name>[A-Za-z_]\w*)\s*(?:\[[^\]]*\])?\s*\("
)


class GoScanner:
    """Finds functions annotated with an autometrics generator directive."""

    language = "go"
    extensions = (".go",)

    def scan(self, source: SourceFile) -> Iterator[ScanItem]:
        text = decode(source)
        code = blank(text, _NOISE)
        package = _PACKAGE.search(code)
        if package is None:
            raise ScanError(source.path, "missing package clause")
        return self._scan(source.path, text, code, package.group("name"))

    def _scan(self, path: str, text: str, code: str, module: str) -> Iterator[ScanItem]:
        for directive in _DIRECTIVE.finditer(_blank_strings(text)):
            line = line_of(text, directive.start())
            try:
                yield self._function(path, text, code, module, directive.end(), line, directive.group("args"))
            except MarkerError as exc:
                yield marker_diagnostic(exc)

    def _function(
        self, path: str, text: str, code: str, module: str, position: int, line: int, args: str
    ) -> InstrumentedFunction:
        rename, track_concurrency = _parse_flags(args, path, line)
        declaration = _next_declaration(text, position)
        if declaration is None:
            raise MarkerError(path, line, "directive must directly precede a func declaration")
        match = _FUNC.match(code, declaration)
        if match is None:
            raise MarkerError(path, line, "directive must directly precede a func declaration")

        chain: List[str] = []
        receiver = _receiver_type(match.group("receiver"))
        if receiver:
            chain.append(receiver)
        end = _body_end(code, match.end() - 1)
        try:
            names = metric_names(rename, track_concurrency=track_concurrency)
        except ValueError as exc:
            raise MarkerError(path, line, str(exc)) from exc
        return InstrumentedFunction(
            qualified_name=qualify(module, chain, match.group("name")),
            module=module,
            file=path,
            line_start=line_of(text, match.start()),
            line_end=line_of(text, end),
            language=self.language,
            metric_names=names,
        )


def _blank_strings(text: str) -> str:
    """Blank string and rune literals but keep comments, where directives live."""
    return _NOISE.sub(
        lambda match: match.group(0) if match.group(0).startswith("/") else re.sub(r"[^\n]", " ", match.group(0)),
        text,
    )


def _parse_flags(args: str, path: str, line: int) -> Tuple[Optional[str], bool]:
    try:
        tokens = shlex.split(args)
    except ValueError as exc:
        raise MarkerError(path, line, f"malformed directive arguments: {exc}") from exc
    rename: Optional[str] = None
    track_concurrency = False
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token == "--track-concurrency":
            track_concurrency = True
        elif token.startswith("--metric-name="):
            rename = token.split("=", 1)[1]
        elif token == "--metric-name":
            if index + 1 >= len(tokens) or tokens[index + 1].startswith("--"):
                raise MarkerError(path, line, "--metric-name requires a value")
            rename = tokens[index + 1]
            index += 1
        index += 1
    return rename, track_concurrency


def _next_declaration(text: str, position: int) -> Optional[int]:
    """Offset of the first line after ``position`` that is not a comment."""
    offset = text.find("\n", position)
    while offset != -1:
        start = offset + 1
        end = text.find("\n", start)
        line = text[start:] if end == -1 else text[start:end]
        stripped = line.strip()
        if stripped and not stripped.startswith("//"):
            return start + (len(line) - len(line.lstrip()))
        offset = end
    return None


def _receiver_type(receiver: Optional[str]) -> Optional[str]:
    if not receiver or not receiver.strip():
        return None
    type_part = receiver.strip().split()[-1]
    type_part = type_part.lstrip("*")
    return type_part.split("[", 1)[0] or None


def _body_end(code: str, paren_index: int) -> int:
    close_paren = match_delimiter(code, paren_index, "(", ")")
    if close_paren == -1:
        return paren_index
    index = close_paren + 1
    while index < len(code):
        char = code[index]
        if char == "(":
            nested = match_delimiter(code, index, "(", ")")
            index = nested + 1 if nested != -1 else len(code)
            continue
        if char == "{":
            close = match_delimiter(code, index)
            if re.search(r"\b(?:interface|struct)\s*$", code[close_paren:index]):
                index = close + 1 if close != -1 else len(code)
                continue
            return close if close != -1 else index
        if char == "\n":
            return index
        index += 1
    return len(code) - 1


__all__ = ["GoScanner"]
