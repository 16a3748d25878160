"""
Unit tests for flattening nested attributes into column paths.
"""

import pytest

from dbaas.eavdb_server.serial import expand, flatten, format_path, parse_path, root_of


class TestFlatten:
    """Tests for flatten()."""

    def test_nested_objects_and_arrays(self):
        """Objects become dotted names, arrays bracketed indexes."""
        pairs = flatten({"bar": {"b": False, "n": 1}, "tags": ["x", "y"], "name": "a"})
        assert pairs == [
            ("bar.b", False),
            ("bar.n", 1),
            ("tags[0]", "x"),
            ("tags[1]", "y"),
            ("name", "a"),
        ]

    def test_deep_nesting(self):
        """Arrays of objects and arrays of arrays flatten recursively."""
        pairs = dict(flatten({"deep": [{"a": 1}, [2, 3]]}))
        assert pairs == {"deep[0].a": 1, "deep[1][0]": 2, "deep[1][1]": 3}

    def test_key_order_does_not_change_names(self):
        """The set of pairs is independent of key order."""
        first = flatten({"a": 1, "b": {"x": 1, "y": 2}})
        second = flatten({"b": {"y": 2, "x": 1}, "a": 1})
        assert set(first) == set(second)

    def test_leaves(self):
        """Refs, bytes and empty containers are not walked into."""
        pairs = dict(flatten({"owner": {"$ref": "User#1"}, "raw": b"\x00", "e": {}, "l": []}))
        assert pairs == {"owner": {"$ref": "User#1"}, "raw": b"\x00", "e": {}, "l": []}

    @pytest.mark.parametrize("key", ["", "a.b", "a[0]", "x]"])
    def test_invalid_keys(self, key):
        """Keys may not contain path syntax."""
        with pytest.raises(ValueError):
            flatten({key: 1})

    def test_non_string_key(self):
        """Keys must be strings."""
        with pytest.raises(TypeError):
            flatten({"a": {1: "x"}})


class TestExpand:
    """Tests for expand()."""

    def test_inverse_of_flatten(self):
        """expand(flatten(v)) == v for nested values."""
        value = {
            "bar": {"b": False, "n": 1, "s": "hoge"},
            "tags": ["x", "y"],
            "deep": [{"a": 1}, [2, 3]],
            "name": "alice",
        }
        assert expand(flatten(value)) == value

    def test_any_pair_order(self):
        """Pairs can arrive in any order."""
        pairs = [("list[2]", "c"), ("list[0]", "a"), ("obj.k", 1), ("list[1]", "b")]
        assert expand(pairs) == {"list": ["a", "b", "c"], "obj": {"k": 1}}

    def test_gaps_are_none(self):
        """Missing array indexes are filled with None."""
        assert expand([("list[2]", "c")]) == {"list": [None, None, "c"]}


class TestPaths:
    """Tests for path helpers."""

    def test_parse_path(self):
        """Paths split into keys and indexes."""
        assert parse_path("a.b[0].c") == ["a", "b", 0, "c"]
        assert parse_path("deep[1][0]") == ["deep", 1, 0]

    def test_format_path(self):
        """format_path is the inverse of parse_path."""
        for path in ["a", "a.b", "a[0]", "a.b[0].c", "deep[1][0]"]:
            assert format_path(parse_path(path)) == path

    def test_root_of(self):
        """Root is the top-level attribute name."""
        assert root_of("bar.n") == "bar"
        assert root_of("tags[3]") == "tags"
        assert root_of("name") == "name"
