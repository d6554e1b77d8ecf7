"""Python marker recognition built on the standard ``ast`` module."""

from __future__ import annotations

import ast
from typing import Iterator, List, Optional, Sequence

from .base import ScanItem, decode, marker_diagnostic, metric_names, module_from_path, qualify
from ..errors import MarkerError, ScanError
from ..models import InstrumentedFunction, SourceFile

_MARKER = "autometrics"


class PythonScanner:
    """Finds functions decorated with ``@autometrics``."""

    language = "python"
    extensions = (".py", ".pyi")

    def scan(self, source: SourceFile) -> Iterator[ScanItem]:
        text = decode(source)
        try:
            tree = ast.parse(text, filename=source.path)
        except SyntaxError as exc:
            raise ScanError(source.path, f"syntax error at line {exc.lineno}: {exc.msg}") from exc
        module = module_from_path(source.path, collapse=("__init__",))
        return self._walk(tree.body, [], source.path, module)

    def _walk(
        self, body: Sequence[ast.stmt], chain: List[str], path: str, module: str
    ) -> Iterator[ScanItem]:
        for node in body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                marker = _find_marker(node.decorator_list)
                if marker is not None:
                    try:
                        names = _marker_metrics(marker, path)
                    except MarkerError as exc:
                        yield marker_diagnostic(exc)
                    else:
                        yield InstrumentedFunction(
                            qualified_name=qualify(module, chain, node.name),
                            module=module,
                            file=path,
                            line_start=node.lineno,
                            line_end=node.end_lineno or node.lineno,
                            language=self.language,
                            metric_names=names,
                        )
                yield from self._walk(node.body, chain + [node.name], path, module)
            elif isinstance(node, ast.ClassDef):
                marker = _find_marker(node.decorator_list)
                if marker is not None:
                    yield marker_diagnostic(
                        MarkerError(
                            path,
                            marker.lineno,
                            f"marker applied to class '{node.name}'; decorate its methods instead",
                        )
                    )
                yield from self._walk(node.body, chain + [node.name], path, module)
            else:
                for block in _nested_blocks(node):
                    yield from self._walk(block, chain, path, module)


def _nested_blocks(node: ast.stmt) -> Iterator[Sequence[ast.stmt]]:
    for field in ("body", "orelse", "finalbody"):
        block = getattr(node, field, None)
        if isinstance(block, list):
            yield block
    for handler in getattr(node, "handlers", None) or []:
        yield handler.body
    for case in getattr(node, "cases", None) or []:
        yield case.body


def _is_marker_name(node: ast.expr) -> bool:
    if isinstance(node, ast.Name):
        return node.id == _MARKER
    if isinstance(node, ast.Attribute):
        return node.attr == _MARKER
    return False


def _find_marker(decorators: Sequence[ast.expr]) -> Optional[ast.expr]:
    for decorator in decorators:
        target = decorator.func if isinstance(decorator, ast.Call) else decorator
        if _is_marker_name(target):
            return decorator
    return None


def _marker_metrics(marker: ast.expr, path: str) -> tuple[str, ...]:
    if not isinstance(marker, ast.Call):
        return metric_names()
    if marker.args:
        raise MarkerError(path, marker.lineno, "marker does not accept positional arguments")

    rename: Optional[str] = None
    track_concurrency = False
    for keyword in marker.keywords:
        value = keyword.value
        if keyword.arg == "metric_name":
            if not isinstance(value, ast.Constant) or not isinstance(value.value, str):
                raise MarkerError(path, marker.lineno, "metric_name must be a string literal")
            rename = value.value
        elif keyword.arg == "track_concurrency":
            if not isinstance(value, ast.Constant) or not isinstance(value.value, bool):
                raise MarkerError(path, marker.lineno, "track_concurrency must be True or False")
            track_concurrency = value.value
    try:
        return metric_names(rename, track_concurrency=track_concurrency)
    except ValueError as exc:
        raise MarkerError(path, marker.lineno, str(exc)) from exc


__all__ = ["PythonScanner"]
