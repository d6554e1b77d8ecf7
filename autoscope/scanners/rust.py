"""Rust marker recognition for the ``#[autometrics]`` attribute."""

from __future__ import annotations

import re
from typing import Iterator, List, Optional, Tuple

from .base import (
    ScanItem,
    blank,
    bracket_depths,
    decode,
    line_of,
    marker_diagnostic,
    match_delimiter,
    metric_names,
    module_from_path,
    qualify,
    scope_chain,
    split_top_level,
    string_literal,
)
from ..errors import MarkerError
from ..models import InstrumentedFunction, SourceFile

_NOISE = re.compile(
    r"//[^\n]*"
    r"|/\*.*?\*/"
    r"|r(?P<hashes>#*)\".*?\"(?P=hashes)"
    r"|b?\"(?:\\.|[^\"\\])*\""
    r"|b?'(?:\\[^'\n]{1,10}|[^'\\\n])'",
    re.DOTALL,
)
_ATTRIBUTE = re.compile(r"#\[\s*(?:::)?(?:autometrics\s*::\s*)?autometrics\b")
_OTHER_ATTRIBUTE = re.compile(r"#!?\[")
_FN = re.compile(
    r"(?:pub(?:\s*\([^)]*\))?\s+)?"
    r"(?:(?:const|async|unsafe|extern)\s+)*"
    r"fn\s+(?P<name>[A-Za-z_]\w*)"
)
_IMPL_HEAD = re.compile(r"(?:unsafe\s+)?impl\b")
_IMPL = re.compile(r"\bimpl\b(?P<header>[^{;]*)\{")
_MOD = re.compile(r"\bmod\s+(?P<name>[A-Za-z_]\w*)\s*\{")


class RustScanner:
    """Finds functions and impl blocks carrying ``#[autometrics]``."""

    language = "rust"
    extensions = (".rs",)

    def scan(self, source: SourceFile) -> Iterator[ScanItem]:
        text = decode(source)
        return self._scan(source.path, text)

    def _scan(self, path: str, text: str) -> Iterator[ScanItem]:
        code = blank(text, _NOISE)
        depths = bracket_depths(code)
        module = module_from_path(path, collapse=("mod", "lib", "main")) or "crate"
        modules = _scopes(code, _MOD, lambda match: match.group("name"))
        impls = _scopes(
            code,
            _IMPL,
            lambda match: _impl_type(match.group("header")) if _item_start(code, match.start()) else None,
        )
        seen: set[int] = set()
        for attribute in _ATTRIBUTE.finditer(code):
            line = line_of(text, attribute.start())
            try:
                close = match_delimiter(code, attribute.start() + 1, "[", "]")
                if close == -1:
                    raise MarkerError(path, line, "unterminated attribute")
                names = _attribute_metrics(text, code, attribute.end(), close, path, line)
                for start, name, end in self._targets(path, code, depths, impls, close, line):
                    if start in seen:
                        continue
                    seen.add(start)
                    chain = scope_chain(modules, start) + scope_chain(impls, start)
                    yield InstrumentedFunction(
                        qualified_name=qualify(module, chain, name),
                        module=".".join([module, *scope_chain(modules, start)]),
                        file=path,
                        line_start=line_of(text, start),
                        line_end=line_of(text, end),
                        language=self.language,
                        metric_names=names,
                    )
            except MarkerError as exc:
                yield marker_diagnostic(exc)

    def _targets(
        self,
        path: str,
        code: str,
        depths: List[int],
        impls: List[Tuple[str, int, int]],
        close: int,
        line: int,
    ) -> List[Tuple[int, str, int]]:
        position = _skip_attributes(code, close + 1)

        function = _FN.match(code, position)
        if function:
            return [(function.start("name"), function.group("name"), _fn_end(code, function.end()))]

        if _IMPL_HEAD.match(code, position):
            block = next((scope for scope in impls if scope[1] > position), None)
            if block is None:
                raise MarkerError(path, line, "impl block has no body")
            _, open_index, close_index = block
            member_depth = depths[open_index] + 1
            targets = []
            for method in _FN.finditer(code, open_index + 1, close_index):
                if depths[method.start()] != member_depth:
                    continue
                targets.append((method.start("name"), method.group("name"), _fn_end(code, method.end())))
            return targets

        raise MarkerError(path, line, "#[autometrics] must be applied to a fn or an impl block")


def _scopes(code: str, pattern: re.Pattern[str], name_of) -> List[Tuple[str, int, int]]:  # type: ignore[no-untyped-def]
    scopes: List[Tuple[str, int, int]] = []
    for match in pattern.finditer(code):
        open_index = match.end() - 1
        close_index = match_delimiter(code, open_index)
        name = name_of(match)
        if close_index != -1 and name:
            scopes.append((name, open_index, close_index))
    return scopes


def _item_start(code: str, index: int) -> bool:
    """True when ``impl`` at ``index`` opens an item rather than an `impl Trait` type."""
    prefix = code[:index].rstrip()
    if prefix.endswith("unsafe"):
        prefix = prefix[: -len("unsafe")].rstrip()
    return not prefix or prefix[-1] in "{};]"


def _impl_type(header: str) -> Optional[str]:
    """Return the self type of an ``impl`` header such as ``<T> Trait for Type<T>``."""
    cleaned = _strip_generics(header)
    cleaned = re.split(r"\bwhere\b", cleaned, maxsplit=1)[0]
    if re.search(r"\bfor\b", cleaned):
        cleaned = re.split(r"\bfor\b", cleaned, maxsplit=1)[1]
    tokens = cleaned.replace("&", " ").replace("mut ", " ").split()
    if not tokens:
        return None
    return tokens[0].split("::")[-1] or None


def _strip_generics(text: str) -> str:
    result: List[str] = []
    depth = 0
    for char in text:
        if char == "<":
            depth += 1
        elif char == ">" and depth:
            depth -= 1
        elif depth == 0:
            result.append(char)
    return "".join(result)


def _skip_attributes(code: str, position: int) -> int:
    while True:
        while position < len(code) and code[position].isspace():
            position += 1
        other = _OTHER_ATTRIBUTE.match(code, position)
        if not other:
            return position
        close = match_delimiter(code, other.end() - 1, "[", "]")
        if close == -1:
            return position
        position = close + 1


def _fn_end(code: str, name_end: int) -> int:
    index = name_end
    while index < len(code) and code[index] not in "(;{":
        index += 1
    if index < len(code) and code[index] == "(":
        close = match_delimiter(code, index, "(", ")")
        index = close + 1 if close != -1 else index + 1
    while index < len(code) and code[index] not in ";{":
        index += 1
    if index >= len(code) or code[index] == ";":
        return min(index, len(code) - 1)
    close = match_delimiter(code, index)
    return close if close != -1 else index


def _attribute_metrics_span(
    code: str, position: int, limit: int, path: str, line: int
) -> Optional[Tuple[int, int]]:
    """Offsets of the attribute argument list, if any."""
    index = position
    while index < len(code) and code[index].isspace():
        index += 1
    if index >= len(code) or code[index] != "(":
        return None
    close = match_delimiter(code, index, "(", ")")
    if close == -1 or close > limit:
        raise MarkerError(path, line, "unbalanced parentheses in #[autometrics] arguments")
    return index + 1, close


def _attribute_metrics(
    text: str, code: str, position: int, limit: int, path: str, line: int
) -> Tuple[str, ...]:
    span = _attribute_metrics_span(code, position, limit, path, line)
    rename: Optional[str] = None
    track_concurrency = False
    if span is not None:
        for item in split_top_level(text[span[0] : span[1]]):
            if "=" in item:
                key, value = (part.strip() for part in item.split("=", 1))
                if not value:
                    raise MarkerError(path, line, f"missing value for '{key}'")
                if key == "metric_name":
                    literal = string_literal(value)
                    if literal is None:
                        raise MarkerError(path, line, "metric_name must be a string literal")
                    rename = literal
            elif item == "track_concurrency":
                track_concurrency = True
            elif not re.fullmatch(r"[A-Za-z_]\w*", item):
                raise MarkerError(path, line, f"malformed attribute argument '{item}'")
    try:
        return metric_names(rename, track_concurrency=track_concurrency)
    except ValueError as exc:
        raise MarkerError(path, line, str(exc)) from exc


__all__ = ["RustScanner"]
