"""Path expressions over decoded JSON values (RFC 9535 JSONPath).

Parsing and evaluation are done by ``python-jsonpath``; this module only
normalizes relative paths, caches compiled expressions and maps library
errors onto the traversal error codes.

    $.items[0].id              member and index selectors
    $.items[-1]  $.items[0:5]  negative index, slice
    $..email                   descendant segment
    $.items[?@.price < 10]     filter (also ?(...), !, &&, ||)
    $.items[?length(@.tags) > 0]

Paths without a leading ``$`` are relative to the root, so ``items[0].id``
means ``$.items[0].id``.

    from llm_controller.json_path import compile_path

    prices = compile_path("$.items[?(@.in_stock == true)].price").find(doc)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

import jsonpath

from llm_controller.errors import PathSyntaxError, PathTypeError


def _normalize(expression: str) -> str:
    text = expression.strip()
    if not text or text.startswith("$"):
        return text
    if text.startswith(("[", ".")):
        return "$" + text
    return "$." + text


def _error_position(exc: jsonpath.JSONPathError) -> int:
    token = getattr(exc, "token", None)
    return getattr(token, "index", 0) if token is not None else 0


def _error_detail(exc: jsonpath.JSONPathError) -> str:
    return str(exc.args[0]) if exc.args else str(exc)


class JsonPath:
    """A compiled path expression."""

    def __init__(self, expression: str, compiled: Any) -> None:
        self.expression = expression
        self._compiled = compiled

    def find(self, document: Any) -> list[Any]:
        """Return every value the path selects, in document order."""
        try:
            return list(self._compiled.findall(document))
        except jsonpath.JSONPathError as exc:
            raise PathTypeError(f"Path {self.expression!r} could not be evaluated: {_error_detail(exc)}") from exc

    def __repr__(self) -> str:
        return f"JsonPath({self.expression!r})"


@lru_cache(maxsize=256)
def compile_path(expression: str) -> JsonPath:
    """Compile ``expression``, raising ``PathSyntaxError`` on bad syntax."""
    if not isinstance(expression, str):
        raise PathSyntaxError(repr(expression), 0, "path must be a string")
    normalized = _normalize(expression)
    if not normalized:
        raise PathSyntaxError(expression, 0, "empty path")
    try:
        compiled = jsonpath.compile(normalized)
    except jsonpath.JSONPathError as exc:
        raise PathSyntaxError(expression, _error_position(exc), _error_detail(exc)) from exc
    return JsonPath(expression, compiled)


def find(expression: str, document: Any) -> list[Any]:
    return compile_path(expression).find(document)


__all__ = ["JsonPath", "compile_path", "find"]
