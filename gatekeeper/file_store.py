# gatekeeper/file_store.py
from __future__ import annotations

import asyncio
import contextlib
import fcntl
import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .records import IdentityRecord
from .store import CounterStore, CorruptRecord, LockTimeout, Mutator, StoreError, T

log = logging.getLogger(__name__)


class _CorruptDocument(StoreError):
    pass


class FileCounterStore(CounterStore):
    """
    Все идентификаторы лежат в одном JSON-документе.

    Любая запись: эксклюзивный flock на соседнем .lock-файле (ждём не дольше
    lock_timeout, опрос раз в lock_poll), чтение документа целиком, правка одной
    записи, запись во временный файл и os.replace поверх оригинала.
    Записи строго последовательны, даже по разным идентификаторам.
    Чтение без блокировки: rename атомарен, читатель видит либо старый,
    либо новый документ целиком.
    """

    name = "file"

    def __init__(self, data_file: str | Path, *, lock_timeout: float = 5.0, lock_poll: float = 0.05):
        self.data_file = Path(data_file)
        self.lock_file = self.data_file.with_name(self.data_file.name + ".lock")
        self.lock_timeout = float(lock_timeout)
        self.lock_poll = float(lock_poll)

        storage_dir = self.data_file.parent
        try:
            storage_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"cannot create storage directory {storage_dir}: {e}") from e
        if not os.access(storage_dir, os.W_OK):
            raise StoreError(f"storage directory not writable: {storage_dir}")

    # -------- блокировка --------

    @contextlib.asynccontextmanager
    async def _locked(self):
        try:
            fh = open(self.lock_file, "a+")
        except OSError as e:
            raise StoreError(f"cannot open lock file: {e}") from e
        try:
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        log.warning("lock timeout after %.1fs on %s", self.lock_timeout, self.lock_file)
                        raise LockTimeout(f"cannot acquire {self.lock_file} within {self.lock_timeout}s")
                    await asyncio.sleep(self.lock_poll)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()

    # -------- документ --------

    def _read_document(self, quarantine: bool) -> Dict[str, Any]:
        try:
            raw = self.data_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StoreError(f"cannot read data file: {e}") from e

        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data

        if not quarantine:
            raise _CorruptDocument(str(self.data_file))
        self._quarantine()
        return {}

    def _quarantine(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        target = self.data_file.with_name(f"{self.data_file.name}.corrupt.{stamp}")
        try:
            os.replace(self.data_file, target)
        except OSError as e:
            raise StoreError(f"cannot quarantine corrupted data file: {e}") from e
        log.error("corrupted data file moved aside to %s, continuing with empty store", target)

    def _write_document(self, data: Dict[str, Any]) -> None:
        payload = json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)
        fd, tmp = tempfile.mkstemp(prefix=self.data_file.name + ".tmp.", dir=str(self.data_file.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.data_file)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise StoreError(f"cannot write data file: {e}") from e

    async def _load(self) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self._read_document, False)
        except _CorruptDocument:
            # карантин только под блокировкой, чтобы не унести чужую свежую запись
            async with self._locked():
                return await asyncio.to_thread(self._read_document, True)

    @staticmethod
    def _decode(identity: str, raw: Any) -> IdentityRecord:
        if not isinstance(raw, dict):
            raise CorruptRecord(f"record is {type(raw).__name__}, not an object")
        rec = IdentityRecord.from_dict(raw)
        if rec.identity != identity:
            raise CorruptRecord("record stored under a foreign key")
        return rec

    # -------- CounterStore --------

    async def get_record(self, identity: str) -> Optional[IdentityRecord]:
        data = await self._load()
        if identity not in data:
            return None
        return self._decode(identity, data[identity])

    async def update(self, identity: str, mutate: Mutator) -> T:
        async with self._locked():
            data = await asyncio.to_thread(self._read_document, True)
            current = self._decode(identity, data[identity]) if identity in data else None
            new, result = mutate(current)
            if new is not None:
                data[identity] = new.to_dict()
                await asyncio.to_thread(self._write_document, data)
            return result

    async def upsert(self, record: IdentityRecord) -> None:
        # старое значение не декодируем: upsert перезаписывает и битую запись
        async with self._locked():
            data = await asyncio.to_thread(self._read_document, True)
            data[record.identity] = record.to_dict()
            await asyncio.to_thread(self._write_document, data)

    async def records(self) -> List[IdentityRecord]:
        data = await self._load()
        out: List[IdentityRecord] = []
        for key, raw in data.items():
            try:
                out.append(self._decode(key, raw))
            except CorruptRecord:
                log.warning("skipping malformed record %s...", str(key)[:20])
        return out

    async def describe(self) -> dict:
        info = {"backend": self.name, "data_file": str(self.data_file), "file_size": 0, "last_modified": None}
        try:
            st = self.data_file.stat()
        except FileNotFoundError:
            return info
        info["file_size"] = st.st_size
        info["last_modified"] = int(st.st_mtime)
        return info
