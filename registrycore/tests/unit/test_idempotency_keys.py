from __future__ import annotations

import pytest

from registrycore.core.errors import IdempotencyKeyInvalidError
from registrycore.services.idempotency import IdempotencyGuard, compute_request_hash


def test_normalize_key_strips_and_bounds_length() -> None:
    guard = IdempotencyGuard(key_max_length=8)
    assert guard.normalize_key("  abc  ") == "abc"
    with pytest.raises(IdempotencyKeyInvalidError):
        guard.normalize_key("   ")
    with pytest.raises(IdempotencyKeyInvalidError):
        guard.normalize_key("123456789")


def test_request_hash_ignores_key_order() -> None:
    assert compute_request_hash({"a": 1, "b": 2}) == compute_request_hash({"b": 2, "a": 1})
    assert compute_request_hash({"a": 1}) != compute_request_hash({"a": 2})
    assert compute_request_hash(b"raw") == compute_request_hash("raw")
    assert compute_request_hash(None) is None
