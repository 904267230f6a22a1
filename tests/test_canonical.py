import pytest

from driftgate.canonical import canonical_equal, content_digest, fingerprint, to_canonical_json
from driftgate.models import ResourceKind


def test_canonical_json() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)
    assert fingerprint(left) == fingerprint(right)


def test_canonical_equal_normalizes_values() -> None:
    assert canonical_equal({"replicas": 2}, {"replicas": 2.0})
    assert canonical_equal(("a", "b"), ["a", "b"])
    assert canonical_equal(ResourceKind.NETWORK, "network")
    assert not canonical_equal([1, 2], [2, 1])


def test_bytes_are_not_attribute_values() -> None:
    with pytest.raises(TypeError):
        to_canonical_json({"blob": b"\x00"})


def test_content_digest() -> None:
    assert content_digest(b"") == "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
