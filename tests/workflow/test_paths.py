"""Tests for reference paths and payload templates."""

import pytest

from mediaflow.workflow.errors import PathError
from mediaflow.workflow.paths import (
    get_path,
    has_path,
    is_valid_path,
    parse_path,
    resolve_template,
    select,
    set_path,
    template_paths,
)


class TestParsePath:
    def test_root(self) -> None:
        assert parse_path("$") == (False, [])

    def test_fields_indexes_and_quoted_keys(self) -> None:
        assert parse_path("$.a.b[2]['odd key']") == (False, ["a", "b", 2, "odd key"])

    def test_context_object(self) -> None:
        assert parse_path("$$.Map.Item.Value") == (True, ["Map", "Item", "Value"])

    @pytest.mark.parametrize("path", ["", "a.b", "$.", "$..a", "$[x]", 42])
    def test_invalid(self, path) -> None:
        with pytest.raises(PathError):
            parse_path(path)
        assert not is_valid_path(path)


class TestGetPath:
    doc = {"a": {"b": [10, 20, {"c": "deep"}]}, "flag": False}

    def test_nested(self) -> None:
        assert get_path(self.doc, "$.a.b[2].c") == "deep"
        assert get_path(self.doc, "$.a.b[-1]") == {"c": "deep"}

    def test_falsy_values_resolve(self) -> None:
        assert get_path(self.doc, "$.flag") is False

    def test_missing_raises(self) -> None:
        with pytest.raises(PathError):
            get_path(self.doc, "$.a.missing")
        with pytest.raises(PathError):
            get_path(self.doc, "$.a.b[7]")
        assert not has_path(self.doc, "$.nope")

    def test_context_object(self) -> None:
        ctx = {"Map": {"Item": {"Index": 3}}}
        assert get_path(self.doc, "$$.Map.Item.Index", ctx) == 3


class TestSetPath:
    def test_root_replaces(self) -> None:
        assert set_path({"a": 1}, "$", [1, 2]) == [1, 2]

    def test_none_discards(self) -> None:
        doc = {"a": 1}
        assert set_path(doc, None, "ignored") is doc

    def test_creates_intermediate_maps_without_mutating(self) -> None:
        doc = {"a": {"keep": True}}
        result = set_path(doc, "$.a.b.c", 5)
        assert result == {"a": {"keep": True, "b": {"c": 5}}}
        assert doc == {"a": {"keep": True}}

    def test_non_map_intermediate_raises(self) -> None:
        with pytest.raises(PathError):
            set_path({"a": [1]}, "$.a.b", 1)

    def test_context_object_is_read_only(self) -> None:
        with pytest.raises(PathError):
            set_path({}, "$$.Execution.Id", "x")


def test_select_none_yields_empty_object() -> None:
    assert select({"a": 1}, None) == {}
    assert select({"a": 1}, "$.a") == 1


class TestResolveTemplate:
    def test_resolves_dollar_keys_recursively(self) -> None:
        template = {
            "type": "publish-finalize",
            "sessionId.$": "$.sessionId",
            "meta": {"item.$": "$$.Map.Item.Value", "static": [1, {"k.$": "$.n"}]},
        }
        doc = {"sessionId": "s-1", "n": 7}
        ctx = {"Map": {"Item": {"Value": "key-1"}}}

        assert resolve_template(template, doc, ctx) == {
            "type": "publish-finalize",
            "sessionId": "s-1",
            "meta": {"item": "key-1", "static": [1, {"k": 7}]},
        }

    def test_resolved_values_are_copies(self) -> None:
        doc = {"ids": ["a"]}
        result = resolve_template({"ids.$": "$.ids"}, doc)
        result["ids"].append("b")
        assert doc == {"ids": ["a"]}

    def test_missing_path_raises(self) -> None:
        with pytest.raises(PathError):
            resolve_template({"x.$": "$.missing"}, {})

    def test_template_paths(self) -> None:
        template = {"a.$": "$.a", "b": {"c.$": "$$.Map.Item.Index"}, "d": "$.literal"}
        assert template_paths(template) == ["$.a", "$$.Map.Item.Index"]
