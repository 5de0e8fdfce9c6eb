"""IdentityRecord decoding."""

import pytest

from gatekeeper.records import IdentityRecord
from gatekeeper.store import CorruptRecord

from .conftest import START, make_identity


def _raw(**overrides):
    data = IdentityRecord.fresh(make_identity("rec"), int(START)).to_dict()
    data.update(overrides)
    return data


def test_roundtrip_of_fresh_record():
    rec = IdentityRecord.from_dict(_raw(count=3, last_seen=int(START)))
    assert rec.count == 3
    assert rec.identity_prefix == make_identity("rec")[:20] + "..."


@pytest.mark.parametrize(
    "overrides",
    [
        {"count": -1},
        {"total_attempts": "many"},
        {"last_seen": 10**30},
        {"grace_period_start": -5},
        {"blocked_at": 10**12 * 1000},
        {"metadata": 5},
        {"identity": ""},
    ],
)
def test_malformed_values_raise(overrides):
    with pytest.raises(CorruptRecord):
        IdentityRecord.from_dict(_raw(**overrides))


def test_non_mapping_raises():
    for raw in (None, [], "x", 3):
        with pytest.raises(CorruptRecord):
            IdentityRecord.from_dict(raw)
