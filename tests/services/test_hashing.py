"""Unit tests for content hashing."""

import hashlib
import json
import random

import pytest

from spanlens.errors import ContentHashError
from spanlens.services.hashing import CanonicalMap, canonical_json, canonicalize, compute_item_hash, content_hash


def test_key_order_does_not_change_hash():
    a = {"b": 1, "a": {"y": [1, 2], "x": None}}
    b = {"a": {"x": None, "y": [1, 2]}, "b": 1}
    assert content_hash(a) == content_hash(b)


def test_hash_is_stable_across_shuffled_insertion_orders():
    items = [(f"k{i}", {"n": i, "tags": ["a", "b"]}) for i in range(20)]
    rng = random.Random(7)
    digests = set()
    for _ in range(10):
        rng.shuffle(items)
        digests.add(content_hash(dict(items)))
    assert len(digests) == 1


def test_nested_maps_inside_lists_are_sorted():
    assert canonical_json([{"b": 1, "a": 2}]) == '[{"a":2,"b":1}]'


def test_list_order_is_significant():
    assert content_hash({"x": [1, 2]}) != content_hash({"x": [2, 1]})


def test_digest_is_sha256_of_canonical_json():
    record = {"z": "é", "a": [True, None, 1.5]}
    payload = canonical_json(record)
    assert payload == '{"a":[true,null,1.5],"z":"é"}'
    assert content_hash(record) == hashlib.sha256(payload.encode("utf-8")).hexdigest()
    assert len(content_hash(record)) == 64


def test_none_hashes_as_null():
    assert content_hash(None) == hashlib.sha256(b"null").hexdigest()


def test_integral_float_hashes_like_int():
    assert content_hash({"n": 1.0}) == content_hash({"n": 1})
    assert content_hash({"n": 1.5}) != content_hash({"n": 1})


def test_canonicalize_returns_sorted_pairs():
    canonical = canonicalize({"b": 2, "a": 1})
    assert isinstance(canonical, CanonicalMap)
    assert list(canonical) == [("a", 1), ("b", 2)]


@pytest.mark.parametrize(
    "record",
    [
        {1: "int key"},
        {"x": float("nan")},
        {"x": float("inf")},
        {"x": object()},
        {"x": {"a", "b"}},
        {"x": "\ud800"},
        {"\udfff": 1},
        ["ok", ["nested \ud83d"]],
    ],
)
def test_unserializable_records_raise(record):
    with pytest.raises(ContentHashError):
        content_hash(record)


def test_item_hash_covers_input_and_expected():
    base = compute_item_hash({"q": "hi"}, {"a": "hello"})
    assert base == compute_item_hash({"q": "hi"}, {"a": "hello"})
    assert base != compute_item_hash({"q": "hi"}, {"a": "bye"})
    assert base != compute_item_hash({"q": "hi"})
    assert compute_item_hash({"q": "hi"}) == content_hash({"input": {"q": "hi"}, "expected": None})


def test_surrogate_from_json_input_is_a_hash_error():
    record = json.loads('{"q": "\\ud800"}')
    with pytest.raises(ContentHashError) as excinfo:
        compute_item_hash(record)
    assert excinfo.value.code == "CONTENT_HASH_ERROR"
