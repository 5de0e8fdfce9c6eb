# gatekeeper/records.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .store import CorruptRecord
from .validator import identity_prefix


# 9999-12-31 23:59:59 UTC; дальше datetime уже не справляется
_MAX_TS = 253402300799

_TS_FIELDS = ("first_seen", "last_seen", "created_at", "grace_period_start", "blocked_at", "last_reset_at")


def _opt_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    return int(v)


@dataclass
class IdentityRecord:
    identity: str
    identity_prefix: str = ""
    count: int = 0
    total_attempts: int = 0
    first_seen: Optional[int] = None
    last_seen: Optional[int] = None
    created_at: int = 0
    grace_period_start: Optional[int] = None
    blocked: bool = False
    blocked_at: Optional[int] = None
    max_count: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    reset_count: int = 0
    last_reset_at: Optional[int] = None

    @classmethod
    def fresh(cls, identity: str, now: int) -> "IdentityRecord":
        return cls(identity=identity, identity_prefix=identity_prefix(identity), created_at=int(now))

    def limit(self, default: int) -> int:
        return int(self.max_count) if self.max_count is not None else int(default)

    def copy(self) -> "IdentityRecord":
        return dataclasses.replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityRecord":
        if not isinstance(data, dict) or not data.get("identity"):
            raise CorruptRecord("record without identity")
        try:
            rec = cls(
                identity=str(data["identity"]),
                identity_prefix=str(data.get("identity_prefix") or identity_prefix(data["identity"])),
                count=int(data.get("count") or 0),
                total_attempts=int(data.get("total_attempts") or 0),
                first_seen=_opt_int(data.get("first_seen")),
                last_seen=_opt_int(data.get("last_seen")),
                created_at=int(data.get("created_at") or 0),
                grace_period_start=_opt_int(data.get("grace_period_start")),
                blocked=bool(data.get("blocked", False)),
                blocked_at=_opt_int(data.get("blocked_at")),
                max_count=_opt_int(data.get("max_count")),
                metadata=dict(data.get("metadata") or {}),
                reset_count=int(data.get("reset_count") or 0),
                last_reset_at=_opt_int(data.get("last_reset_at")),
            )
        except (TypeError, ValueError) as e:
            raise CorruptRecord(f"malformed record: {e}") from e
        if rec.count < 0 or rec.total_attempts < 0:
            raise CorruptRecord("negative counters")
        for name in _TS_FIELDS:
            ts = getattr(rec, name)
            if ts is not None and not 0 <= ts <= _MAX_TS:
                raise CorruptRecord(f"{name} out of range")
        return rec
