"""Tests for the path expression wrapper."""

from __future__ import annotations

import pytest

from llm_controller.errors import PathSyntaxError, TraversalError
from llm_controller.json_path import compile_path, find

DOC = {
    "store": {
        "name": "Corner Shop",
        "items": [
            {"id": 1, "name": "lamp", "price": 25.0, "in_stock": True, "tags": ["home"]},
            {"id": 2, "name": "desk", "price": 120, "in_stock": False, "tags": []},
            {"id": 3, "name": "pen", "price": 2, "in_stock": True, "email": "pens@example.com"},
        ],
        "owner": {"name": "Ada", "contact": {"email": "ada@example.com"}},
    },
    "名前": "ショップ",
    "ünit": "EUR",
}


class TestFind:
    def test_member_chain(self) -> None:
        assert find("$.store.name", DOC) == ["Corner Shop"]

    def test_index_and_slice(self) -> None:
        assert find("$.store.items[-1].name", DOC) == ["pen"]
        assert find("$.store.items[0:2].id", DOC) == [1, 2]

    def test_missing_member_is_empty(self) -> None:
        assert find("$.store.nope", DOC) == []

    def test_descendants(self) -> None:
        assert sorted(find("$..email", DOC)) == ["ada@example.com", "pens@example.com"]

    def test_filter(self) -> None:
        assert find("$.store.items[?(@.name == 'desk')].price", DOC) == [120]

    def test_negated_filter(self) -> None:
        assert find("$.store.items[?(!@.email)].id", DOC) == [1, 2]

    def test_function_extension(self) -> None:
        assert find("$.store.items[?length(@.tags) > 0].id", DOC) == [1]

    def test_non_ascii_member_names(self) -> None:
        assert find("$.名前", DOC) == ["ショップ"]
        assert find("$.ünit", DOC) == ["EUR"]


class TestRelativePaths:
    @pytest.mark.parametrize("expr", ["store.items[0].id", ".store.items[0].id", "$.store.items[0].id"])
    def test_rooted(self, expr: str) -> None:
        assert find(expr, DOC) == [1]

    def test_bracket_start(self) -> None:
        assert find("['store']['owner']['name']", DOC) == ["Ada"]


class TestSyntaxErrors:
    @pytest.mark.parametrize("expr", ["", "   ", "$[", "$['unterminated]", "$.store.items[?(@.a ==)]"])
    def test_rejected_as_bad_path(self, expr: str) -> None:
        with pytest.raises(PathSyntaxError) as exc_info:
            compile_path(expr)
        assert exc_info.value.code == "bad_path"
        assert isinstance(exc_info.value, TraversalError)
        assert exc_info.value.position >= 0

    def test_message_names_path(self) -> None:
        with pytest.raises(PathSyntaxError, match=r"Invalid path '\$\['"):
            compile_path("$[")


class TestCompileCache:
    def test_same_object(self) -> None:
        assert compile_path("$.store.items") is compile_path("$.store.items")
