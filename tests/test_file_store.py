"""JSON document backend: locking, atomic writes, corruption handling."""

import fcntl
import json

import pytest

from gatekeeper.file_store import FileCounterStore
from gatekeeper.records import IdentityRecord
from gatekeeper.store import CorruptRecord, LockTimeout

from .conftest import START, make_identity


async def test_missing_record_and_upsert(file_store):
    ident = make_identity("f1")
    assert await file_store.get_record(ident) is None

    rec = IdentityRecord.fresh(ident, int(START))
    rec.count = 2
    await file_store.upsert(rec)

    got = await file_store.get_record(ident)
    assert got.count == 2
    assert got.identity_prefix == ident[:20] + "..."

    on_disk = json.loads(file_store.data_file.read_text())
    assert on_disk[ident]["count"] == 2


async def test_update_returns_value_and_skips_write_on_none(file_store):
    ident = make_identity("f2")

    def create(current):
        assert current is None
        return IdentityRecord.fresh(ident, int(START)), "created"

    assert await file_store.update(ident, create) == "created"
    mtime = file_store.data_file.stat().st_mtime_ns

    assert await file_store.update(ident, lambda current: (None, current.count)) == 0
    assert file_store.data_file.stat().st_mtime_ns == mtime


async def test_no_temp_files_left_behind(file_store):
    for i in range(3):
        await file_store.upsert(IdentityRecord.fresh(make_identity(f"t{i}"), int(START)))
    leftovers = [p.name for p in file_store.data_file.parent.iterdir() if ".tmp." in p.name]
    assert leftovers == []
    assert len(await file_store.records()) == 3


async def test_corrupted_document_is_quarantined(file_store):
    file_store.data_file.write_text("{not json", encoding="utf-8")

    assert await file_store.get_record(make_identity("c")) is None
    backups = list(file_store.data_file.parent.glob("user_limits.json.corrupt.*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{not json"

    # хранилище продолжает работать с пустого документа
    await file_store.upsert(IdentityRecord.fresh(make_identity("c"), int(START)))
    assert len(await file_store.records()) == 1


async def test_malformed_record_raises_and_is_skipped_in_scan(file_store):
    good = make_identity("good")
    bad = make_identity("bad")
    await file_store.upsert(IdentityRecord.fresh(good, int(START)))
    doc = json.loads(file_store.data_file.read_text())
    doc[bad] = {"identity": bad, "count": -3}
    file_store.data_file.write_text(json.dumps(doc))

    with pytest.raises(CorruptRecord):
        await file_store.get_record(bad)
    assert [r.identity for r in await file_store.records()] == [good]


async def test_lock_timeout(tmp_path):
    store = FileCounterStore(tmp_path / "limits.json", lock_timeout=0.1, lock_poll=0.02)
    with open(store.lock_file, "a+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        try:
            with pytest.raises(LockTimeout):
                await store.upsert(IdentityRecord.fresh(make_identity("l"), int(START)))
        finally:
            fcntl.flock(holder.fileno(), fcntl.LOCK_UN)

    await store.upsert(IdentityRecord.fresh(make_identity("l"), int(START)))
    assert await store.get_record(make_identity("l")) is not None


async def test_creates_nested_directory_and_describes(tmp_path):
    store = FileCounterStore(tmp_path / "a" / "b" / "limits.json")
    assert store.data_file.parent.is_dir()
    info = await store.describe()
    assert info["backend"] == "file"
    assert info["file_size"] == 0

    await store.upsert(IdentityRecord.fresh(make_identity("d"), int(START)))
    info = await store.describe()
    assert info["file_size"] > 0
    assert info["last_modified"] is not None


async def test_null_and_out_of_range_entries_are_corrupt(file_store):
    good = make_identity("ok")
    nulled = make_identity("null")
    far = make_identity("far")
    await file_store.upsert(IdentityRecord.fresh(good, int(START)))
    doc = json.loads(file_store.data_file.read_text())
    doc[nulled] = None
    doc[far] = dict(doc[good], identity=far, last_seen=10**30)
    file_store.data_file.write_text(json.dumps(doc))

    with pytest.raises(CorruptRecord):
        await file_store.get_record(nulled)
    with pytest.raises(CorruptRecord):
        await file_store.get_record(far)
    assert [r.identity for r in await file_store.records()] == [good]

    # upsert чинит битую запись, не пытаясь её прочитать
    await file_store.upsert(IdentityRecord.fresh(nulled, int(START)))
    assert (await file_store.get_record(nulled)).count == 0
