from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib

from pydantic import BaseModel
import pytest

from registrycore.domain.models import Membership
from registrycore.services.audit import canonical_json, compute_entry_hash, to_snapshot


@dataclass
class _Grant:
    role: str
    granted: bool


class _Person(BaseModel):
    name: str
    born: datetime


def test_canonical_json_is_key_order_independent() -> None:
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert canonical_json({"a": [1, 2], "b": 1}) == canonical_json({"b": 1, "a": [1, 2]})


def test_hash_concatenates_present_parts_only() -> None:
    after = {"role": "VIEWER"}
    expected = hashlib.sha256(
        ("CREATE" + "Membership" + "m-1" + canonical_json(after)).encode("utf-8")
    ).hexdigest()
    digest = compute_entry_hash(
        action="CREATE",
        entity_type="Membership",
        entity_id="m-1",
        before=None,
        after=after,
        prev_hash=None,
    )
    assert digest == expected
    assert len(digest) == 64
    assert digest == digest.lower()


def test_hash_depends_on_previous_hash() -> None:
    kwargs = dict(action="UPDATE", entity_type="Membership", entity_id="m-1", before=None, after=None)
    first = compute_entry_hash(prev_hash=None, **kwargs)
    chained = compute_entry_hash(prev_hash=first, **kwargs)
    assert first != chained


def test_to_snapshot_accepts_dataclasses_models_and_rows() -> None:
    assert to_snapshot(_Grant(role="PRIEST", granted=True)) == {"role": "PRIEST", "granted": True}

    born = datetime(1990, 5, 1, tzinfo=timezone.utc)
    assert to_snapshot(_Person(name="Ana", born=born)) == {"name": "Ana", "born": born.isoformat().replace("+00:00", "Z")}

    row = Membership(id="m-1", user_id="u-1", tenant_id="t-1", role="VIEWER", status="ACTIVE")
    snapshot = to_snapshot(row)
    assert snapshot["id"] == "m-1"
    assert snapshot["role"] == "VIEWER"
    assert snapshot["expires_at"] is None


def test_to_snapshot_rejects_unknown_objects() -> None:
    with pytest.raises(TypeError):
        to_snapshot(object())
