"""TypeScript and JavaScript marker recognition.

Two forms are recognised: the ``@Autometrics()`` decorator on a class method
(or on a class, which instruments every method) and the ``autometrics(fn)``
wrapper call, optionally preceded by an options object.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Set, Tuple

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
    r"|\"(?:\\.|[^\"\\\n])*\""
    r"|'(?:\\.|[^'\\\n])*'"
    r"|`(?:\\.|[^`\\])*`",
    re.DOTALL,
)
_CLASS = re.compile(r"\bclass\s+(?P<name>[A-Za-z_$][\w$]*)[^{;=]*\{")
_CLASS_HEAD = re.compile(
    r"(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(?P<name>[A-Za-z_$][\w$]*)"
)
_DECORATOR = re.compile(r"@Autometrics\b")
_OTHER_DECORATOR = re.compile(r"@[A-Za-z_$][\w$.]*")
_WRAPPER = re.compile(r"(?<![\w$.@])autometrics\s*\(")
_METHOD = re.compile(
    r"(?:(?:public|private|protected|static|async|readonly|override|abstract|get|set)\s+)*"
    r"\*?\s*(?P<name>#?[A-Za-z_$][\w$]*)\s*(?:<[^>{}()]*>)?\s*\("
)
_FUNCTION_EXPR = re.compile(r"^(?:async\s+)?function\s*\*?\s*(?P<name>[A-Za-z_$][\w$]*)")
_IDENTIFIER = re.compile(r"^[A-Za-z_$][\w$]*$")
_ASSIGNMENT = re.compile(
    r"(?:const|let|var)\s+(?P<name>[A-Za-z_$][\w$]*)\s*(?::[^=;]+)?=\s*(?:await\s+)?$"
)
_NOT_METHODS = {
    "constructor",
    "if",
    "for",
    "while",
    "switch",
    "catch",
    "return",
    "function",
    "super",
    "new",
}


@dataclass
class _Options:
    rename: Optional[str] = None
    track_concurrency: bool = False
    function_name: Optional[str] = None


class _FileContext:
    """Positions shared by every marker in one file."""

    def __init__(self, path: str, text: str) -> None:
        self.path = path
        self.text = text
        self.code = blank(text, _NOISE)
        self.depth = bracket_depths(self.code)
        self.classes: List[Tuple[str, int, int]] = []
        for match in _CLASS.finditer(self.code):
            open_index = match.end() - 1
            close_index = match_delimiter(self.code, open_index)
            if close_index != -1:
                self.classes.append((match.group("name"), open_index, close_index))

    def line(self, index: int) -> int:
        return line_of(self.text, index)

    def skip_space(self, index: int) -> int:
        while index < len(self.code) and self.code[index].isspace():
            index += 1
        return index


class TypeScriptScanner:
    """Finds ``@Autometrics`` decorators and ``autometrics()`` wrappers."""

    language = "typescript"
    extensions = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")

    def scan(self, source: SourceFile) -> Iterator[ScanItem]:
        text = decode(source)
        return self._scan(source.path, text)

    def _scan(self, path: str, text: str) -> Iterator[ScanItem]:
        ctx = _FileContext(path, text)
        module = module_from_path(path, collapse=("index",))
        seen: Set[int] = set()
        for match in _DECORATOR.finditer(ctx.code):
            try:
                yield from self._decorated(ctx, module, match.start(), match.end(), seen)
            except MarkerError as exc:
                yield marker_diagnostic(exc)
        for match in _WRAPPER.finditer(ctx.code):
            try:
                yield self._wrapped(ctx, module, match.start(), match.end() - 1)
            except MarkerError as exc:
                yield marker_diagnostic(exc)

    # ------------------------------------------------------------------
    # Decorator form

    def _decorated(
        self, ctx: _FileContext, module: str, start: int, end: int, seen: Set[int]
    ) -> Iterator[InstrumentedFunction]:
        line = ctx.line(start)
        options = _Options()
        position = ctx.skip_space(end)
        if position < len(ctx.code) and ctx.code[position] == "(":
            close = match_delimiter(ctx.code, position, "(", ")")
            if close == -1:
                raise MarkerError(ctx.path, line, "unbalanced parentheses in @Autometrics arguments")
            args = split_top_level(ctx.text[position + 1 : close])
            if len(args) > 1 or (args and not args[0].startswith("{")):
                raise MarkerError(ctx.path, line, "@Autometrics expects a single options object")
            if args:
                options = _parse_options(args[0], ctx.path, line)
            position = close + 1
        position = self._skip_decorators(ctx, position)
        names = _derive_metrics(options, ctx.path, line)

        rest = ctx.code[position:]
        class_head = _CLASS_HEAD.match(rest)
        if class_head:
            scope = next(
                (scope for scope in ctx.classes if scope[1] >= position and scope[0] == class_head.group("name")),
                None,
            )
            if scope is None:
                raise MarkerError(ctx.path, line, "decorated class has no body")
            for method_start, name, end_index in self._methods(ctx, scope):
                if method_start in seen:
                    continue
                seen.add(method_start)
                yield self._record(ctx, module, method_start, name, end_index, names)
            return

        method = _METHOD.match(rest)
        chain = scope_chain(ctx.classes, position)
        if not method or not chain or method.group("name") in _NOT_METHODS:
            raise MarkerError(ctx.path, line, "@Autometrics must decorate a class method or a class")
        method_start = position + method.start("name")
        end_index = self._body_end(ctx, position + method.end() - 1)
        if method_start in seen:
            return
        seen.add(method_start)
        yield self._record(ctx, module, method_start, method.group("name"), end_index, names)

    @staticmethod
    def _skip_decorators(ctx: _FileContext, position: int) -> int:
        while True:
            position = ctx.skip_space(position)
            other = _OTHER_DECORATOR.match(ctx.code, position)
            if not other:
                return position
            position = ctx.skip_space(other.end())
            if position < len(ctx.code) and ctx.code[position] == "(":
                close = match_delimiter(ctx.code, position, "(", ")")
                if close == -1:
                    return position
                position = close + 1

    def _methods(self, ctx: _FileContext, scope: Tuple[str, int, int]) -> Iterator[Tuple[int, str, int]]:
        _, open_index, close_index = scope
        member_depth = ctx.depth[open_index] + 1
        for match in _METHOD.finditer(ctx.code, open_index + 1, close_index):
            start = match.start()
            if ctx.depth[start] != member_depth:
                continue
            if not _starts_member(ctx.code, start):
                continue
            name = match.group("name")
            if name in _NOT_METHODS:
                continue
            yield match.start("name"), name, self._body_end(ctx, match.end() - 1)

    @staticmethod
    def _body_end(ctx: _FileContext, paren_index: int) -> int:
        close_paren = match_delimiter(ctx.code, paren_index, "(", ")")
        if close_paren == -1:
            return paren_index
        index = close_paren + 1
        while index < len(ctx.code) and ctx.code[index] not in "{;":
            index += 1
        if index >= len(ctx.code) or ctx.code[index] == ";":
            return min(index, len(ctx.code) - 1)
        close_brace = match_delimiter(ctx.code, index)
        return close_brace if close_brace != -1 else index

    # ------------------------------------------------------------------
    # Wrapper form

    def _wrapped(
        self, ctx: _FileContext, module: str, start: int, open_paren: int
    ) -> InstrumentedFunction:
        line = ctx.line(start)
        close = match_delimiter(ctx.code, open_paren, "(", ")")
        if close == -1:
            raise MarkerError(ctx.path, line, "unbalanced parentheses in autometrics() call")
        args = split_top_level(ctx.text[open_paren + 1 : close])
        if not args:
            raise MarkerError(ctx.path, line, "autometrics() requires a function argument")
        options = _Options()
        if len(args) >= 2 and args[0].startswith("{"):
            options = _parse_options(args[0], ctx.path, line)
            function = args[1]
        elif len(args) == 1:
            function = args[0]
        else:
            raise MarkerError(ctx.path, line, "autometrics() expects (options?, function)")

        name = options.function_name or _wrapped_name(function)
        if name is None:
            assignment = _ASSIGNMENT.search(ctx.code[:start])
            if assignment:
                name = assignment.group("name")
        if name is None:
            raise MarkerError(ctx.path, line, "cannot determine the name of the wrapped function")
        names = _derive_metrics(options, ctx.path, line)
        return self._record(ctx, module, start, name, close, names)

    # ------------------------------------------------------------------

    def _record(
        self,
        ctx: _FileContext,
        module: str,
        start: int,
        name: str,
        end: int,
        names: Tuple[str, ...],
    ) -> InstrumentedFunction:
        chain = scope_chain(ctx.classes, start)
        return InstrumentedFunction(
            qualified_name=qualify(module, chain, name.lstrip("#")),
            module=module,
            file=ctx.path,
            line_start=ctx.line(start),
            line_end=ctx.line(end),
            language=self.language,
            metric_names=names,
        )


def _starts_member(code: str, index: int) -> bool:
    cursor = index - 1
    while cursor >= 0 and code[cursor] in " \t":
        cursor -= 1
    return cursor < 0 or code[cursor] in "\n{};)"


def _wrapped_name(function: str) -> Optional[str]:
    expression = _FUNCTION_EXPR.match(function.strip())
    if expression:
        return expression.group("name")
    if _IDENTIFIER.match(function.strip()):
        return function.strip()
    return None


def _parse_options(raw: str, path: str, line: int) -> _Options:
    body = raw.strip()
    if not (body.startswith("{") and body.endswith("}")):
        raise MarkerError(path, line, "options must be an object literal")
    options = _Options()
    for entry in split_top_level(body[1:-1]):
        if ":" not in entry:
            if _IDENTIFIER.match(entry):
                continue
            raise MarkerError(path, line, f"malformed option '{entry}'")
        key, value = (part.strip() for part in entry.split(":", 1))
        key = string_literal(key) or key
        if key == "metricName":
            literal = string_literal(value)
            if literal is None:
                raise MarkerError(path, line, "metricName must be a string literal")
            options.rename = literal
        elif key == "functionName":
            literal = string_literal(value)
            if literal is None or not literal:
                raise MarkerError(path, line, "functionName must be a non-empty string literal")
            options.function_name = literal
        elif key == "trackConcurrency":
            if value not in {"true", "false"}:
                raise MarkerError(path, line, "trackConcurrency must be true or false")
            options.track_concurrency = value == "true"
    return options


def _derive_metrics(options: _Options, path: str, line: int) -> Tuple[str, ...]:
    try:
        return metric_names(options.rename, track_concurrency=options.track_concurrency)
    except ValueError as exc:
        raise MarkerError(path, line, str(exc)) from exc


__all__ = ["TypeScriptScanner"]
