"""Tests for query key normalization and matching."""

import pytest

from dkan_query import define_keys, is_key_prefix, normalize_key
from dkan_query.keys import is_key_complete, serialize_key


class TestNormalizeKey:
    def test_list_and_tuple_are_equal(self) -> None:
        assert normalize_key(["datasets", "single", "abc"]) == ("datasets", "single", "abc")
        assert normalize_key(("datasets", "all")) == normalize_key(["datasets", "all"])

    def test_string_is_one_segment(self) -> None:
        assert normalize_key("datasets") == ("datasets",)

    def test_mapping_segments_ignore_order(self) -> None:
        a = normalize_key(["datasets", "search", {"keyword": "health", "page": 1}])
        b = normalize_key(["datasets", "search", {"page": 1, "keyword": "health"}])
        assert a == b
        assert hash(a) == hash(b)

    def test_mapping_segments_drop_unset_fields(self) -> None:
        a = normalize_key(["datasets", "search", {"keyword": "health", "theme": None}])
        b = normalize_key(["datasets", "search", {"keyword": "health"}])
        assert a == b

    def test_nested_values_are_frozen(self) -> None:
        key = normalize_key(["datastore", "query", "abc", 0, {"properties": ["a", "b"]}])
        hash(key)

    def test_different_values_differ(self) -> None:
        assert normalize_key(["datasets", "single", "a"]) != normalize_key(
            ["datasets", "single", "b"]
        )

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            normalize_key([])
        assert normalize_key([], allow_empty=True) == ()

    def test_unhashable_segment_rejected(self) -> None:
        class Opaque:
            __hash__ = None  # type: ignore[assignment]

        with pytest.raises(TypeError, match="Unhashable"):
            normalize_key(["datasets", Opaque()])


class TestKeyPrefix:
    def test_segment_prefix_matches(self) -> None:
        key = ("datasets", "single", "abc")
        assert is_key_prefix(("datasets",), key)
        assert is_key_prefix(("datasets", "single"), key)
        assert is_key_prefix(key, key)

    def test_prefix_is_per_segment_not_per_character(self) -> None:
        assert not is_key_prefix(("data",), ("datasets", "all"))

    def test_longer_prefix_does_not_match(self) -> None:
        assert not is_key_prefix(("datasets", "all", "x"), ("datasets", "all"))

    def test_empty_prefix_matches_everything(self) -> None:
        assert is_key_prefix((), ("datasets", "all"))


class TestKeyCompleteness:
    def test_complete_key(self) -> None:
        assert is_key_complete(("datasets", "single", "abc"))

    def test_none_or_empty_segment_is_incomplete(self) -> None:
        assert not is_key_complete(("datasets", "single", None))
        assert not is_key_complete(("datasets", "single", ""))


class TestDefineKeys:
    def test_factories_return_normalized_keys(self) -> None:
        keys = define_keys(
            {
                "dataset": lambda id: ("datasets", "single", id),
                "search": lambda options: ["datasets", "search", options],
            }
        )
        assert keys["dataset"]("abc") == ("datasets", "single", "abc")
        assert keys["search"]({"q": "x"}) == normalize_key(["datasets", "search", {"q": "x"}])

    def test_serialize_key(self) -> None:
        assert serialize_key(("datasets", "single", "abc")) == "datasets/single/abc"
