"""Pytest configuration and fixtures for gatekeeper tests."""

import asyncio
import hashlib
from typing import Dict, List, Optional

import pytest

from gatekeeper.db import SqliteCounterStore
from gatekeeper.file_store import FileCounterStore
from gatekeeper.limits import AdmissionController
from gatekeeper.records import IdentityRecord
from gatekeeper.store import CounterStore, StoreError

# 2025-01-01 12:00:00 UTC
START = 1735732800.0
SECRET = "test-secret"


def make_identity(seed: str = "user") -> str:
    """Legacy-format identity (bare sha-256 hex)."""
    return hashlib.sha256(seed.encode()).hexdigest()


def to_base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def make_composite(ts_seconds: float, seed: str = "user") -> str:
    return f"fp_{make_identity(seed)}_{to_base36(int(ts_seconds * 1000))}"


class FakeClock:
    def __init__(self, start: float = START):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryStore(CounterStore):
    """In-memory backend with the same update contract as the real ones."""

    name = "memory"

    def __init__(self):
        self.data: Dict[str, dict] = {}
        self.fail = False
        self._lock = asyncio.Lock()

    def _check(self):
        if self.fail:
            raise StoreError("backend down")

    async def get_record(self, identity: str) -> Optional[IdentityRecord]:
        self._check()
        raw = self.data.get(identity)
        return IdentityRecord.from_dict(raw) if raw else None

    async def upsert(self, record: IdentityRecord) -> None:
        self._check()
        self.data[record.identity] = record.to_dict()

    async def update(self, identity, mutate):
        self._check()
        async with self._lock:
            raw = self.data.get(identity)
            new, result = mutate(IdentityRecord.from_dict(raw) if raw else None)
            if new is not None:
                self.data[identity] = new.to_dict()
            return result

    async def records(self) -> List[IdentityRecord]:
        self._check()
        return [IdentityRecord.from_dict(raw) for raw in self.data.values()]


class RecordingAudit:
    def __init__(self, fail: bool = False):
        self.events: List[tuple] = []
        self.fail = fail

    async def log(self, identity, action, component, metadata=None):
        if self.fail:
            raise RuntimeError("audit backend down")
        self.events.append((identity, action, component, metadata))

    @property
    def actions(self) -> List[str]:
        return [e[1] for e in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def controller(memory_store, clock, audit):
    return AdmissionController(
        memory_store,
        max_count=5,
        grace_period_minutes=1,
        secret=SECRET,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def identity():
    return make_identity("alice")


@pytest.fixture
def file_store(tmp_path):
    return FileCounterStore(tmp_path / "data" / "user_limits.json", lock_timeout=5.0, lock_poll=0.01)


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteCounterStore(tmp_path / "limits.db")
