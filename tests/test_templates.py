"""Tests for the template resolver."""

from __future__ import annotations

import pytest

from conveyor.engine.errors import UnresolvedReferenceError
from conveyor.engine.templates import (
    Placeholder,
    build_namespace,
    find_references,
    lookup,
    resolve,
    split_template,
)

NAMESPACE = {
    "input": {"x": 1, "name": "world", "items": [10, 20, 30]},
    "a": {"stdout": "2", "exit_code": 0, "meta": {"tags": ["x", "y"]}},
    "b": [{"id": 7}, {"id": 8}],
}


class TestSplitTemplate:
    def test_plain_text(self):
        assert split_template("hello") == ["hello"]

    def test_single_placeholder(self):
        assert split_template("{{a.stdout}}") == [Placeholder("a.stdout")]

    def test_whitespace_inside_braces(self):
        assert split_template("{{  a.stdout }}") == [Placeholder("a.stdout")]

    def test_mixed(self):
        parts = split_template("x={{input.x}}, y={{a.stdout}}!")
        assert parts == ["x=", Placeholder("input.x"), ", y=", Placeholder("a.stdout"), "!"]

    def test_invalid_path_kept_literal(self):
        assert split_template("{{ not a ref }}") == ["{{ not a ref }}"]

    def test_unclosed_kept_literal(self):
        assert split_template("print('{{a')") == ["print('{{a')"]

    def test_triple_braces(self):
        assert split_template("{{{a}}}") == ["{", Placeholder("a"), "}"]


class TestFindReferences:
    def test_nested(self):
        value = {"code": "print({{input.x}})", "args": ["{{a.stdout}}", 3, {"k": "{{b.0.id}}"}]}
        assert find_references(value) == ["input.x", "a.stdout", "b.0.id"]

    def test_non_strings_ignored(self):
        assert find_references({"n": 1, "f": 2.5, "none": None, "flag": True}) == []

    def test_dict_keys_not_scanned(self):
        assert find_references({"{{a.stdout}}": 1}) == []


class TestLookup:
    def test_dict_path(self):
        assert lookup("a.meta.tags", NAMESPACE) == ["x", "y"]

    def test_list_index(self):
        assert lookup("b.1.id", NAMESPACE) == 8
        assert lookup("input.items.2", NAMESPACE) == 30

    def test_whole_output(self):
        assert lookup("a", NAMESPACE) is NAMESPACE["a"]

    def test_missing_root(self):
        with pytest.raises(UnresolvedReferenceError, match="zzz"):
            lookup("zzz.field", NAMESPACE)

    def test_missing_key(self):
        with pytest.raises(UnresolvedReferenceError) as exc:
            lookup("a.nope", NAMESPACE)
        assert exc.value.path == "a.nope"
        assert exc.value.stop_class is True

    def test_index_out_of_range(self):
        with pytest.raises(UnresolvedReferenceError, match="out of range"):
            lookup("b.5", NAMESPACE)

    def test_non_integer_index(self):
        with pytest.raises(UnresolvedReferenceError, match="not a list index"):
            lookup("b.first", NAMESPACE)

    def test_index_into_scalar(self):
        with pytest.raises(UnresolvedReferenceError, match="cannot index"):
            lookup("a.exit_code.value", NAMESPACE)


class TestResolve:
    def test_whole_string_keeps_native_type(self):
        """A string that is exactly one placeholder yields the value itself."""
        assert resolve("{{input.x}}", NAMESPACE) == 1
        assert resolve("{{a.exit_code}}", NAMESPACE) == 0
        assert resolve("{{a.meta}}", NAMESPACE) == {"tags": ["x", "y"]}
        assert resolve("{{ input.items }}", NAMESPACE) == [10, 20, 30]

    def test_mixed_string_splices(self):
        assert resolve("Hello {{input.name}}!", NAMESPACE) == "Hello world!"
        assert resolve("n={{input.x}}", NAMESPACE) == "n=1"

    def test_mixed_string_json_encodes_objects(self):
        assert resolve("tags: {{a.meta.tags}}", NAMESPACE) == 'tags: ["x", "y"]'

    def test_same_shape(self):
        value = {"code": "print({{a.stdout}})", "list": ["{{input.x}}", 5], "none": None}
        assert resolve(value, NAMESPACE) == {"code": "print(2)", "list": [1, 5], "none": None}

    def test_input_not_mutated(self):
        value = {"k": ["{{input.x}}"]}
        resolve(value, NAMESPACE)
        assert value == {"k": ["{{input.x}}"]}

    def test_non_string_leaves_pass_through(self):
        assert resolve(42, NAMESPACE) == 42
        assert resolve(None, NAMESPACE) is None

    def test_unresolved_in_nested_value(self):
        with pytest.raises(UnresolvedReferenceError):
            resolve({"a": ["ok", "{{missing.x}}"]}, NAMESPACE)


def test_build_namespace():
    ns = build_namespace({"x": 1}, {"a": {"stdout": "2"}})
    assert ns == {"input": {"x": 1}, "a": {"stdout": "2"}}
