from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
from cryptography.fernet import Fernet, InvalidToken

from .records import IdentityRecord
from .security import decrypt_metadata, encrypt_metadata
from .store import CounterStore, CorruptRecord, Mutator, StoreError, T

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS identity_limits(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  identity TEXT UNIQUE NOT NULL,
  identity_prefix TEXT NOT NULL,
  count INTEGER NOT NULL DEFAULT 0,
  total_attempts INTEGER NOT NULL DEFAULT 0,
  first_seen INTEGER,
  last_seen INTEGER,
  created_at INTEGER NOT NULL,
  grace_period_start INTEGER,
  blocked INTEGER NOT NULL DEFAULT 0,
  blocked_at INTEGER,
  max_count INTEGER,
  metadata BLOB,
  reset_count INTEGER NOT NULL DEFAULT 0,
  last_reset_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_limits_last_seen ON identity_limits(last_seen);

CREATE TABLE IF NOT EXISTS activity_log(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  identity_prefix TEXT NOT NULL,
  action TEXT NOT NULL,
  component TEXT NOT NULL,
  created_at INTEGER NOT NULL,
  meta TEXT
);

CREATE INDEX IF NOT EXISTS idx_activity_created_at ON activity_log(created_at);
"""

_COLUMNS = (
    "identity, identity_prefix, count, total_attempts, first_seen, last_seen, created_at, "
    "grace_period_start, blocked, blocked_at, max_count, metadata, reset_count, last_reset_at"
)

# created_at и first_seen при обновлении не трогаем
_UPSERT = f"""
INSERT INTO identity_limits ({_COLUMNS})
VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
ON CONFLICT(identity) DO UPDATE SET
  count=excluded.count,
  total_attempts=excluded.total_attempts,
  first_seen=COALESCE(identity_limits.first_seen, excluded.first_seen),
  last_seen=excluded.last_seen,
  grace_period_start=excluded.grace_period_start,
  blocked=excluded.blocked,
  blocked_at=excluded.blocked_at,
  max_count=excluded.max_count,
  metadata=excluded.metadata,
  reset_count=excluded.reset_count,
  last_reset_at=excluded.last_reset_at
"""


async def open_db(db_path: str, busy_timeout: float = 5.0) -> aiosqlite.Connection:
    """Соединение в autocommit-режиме: транзакции открываем явно, где они нужны."""
    db = await aiosqlite.connect(str(db_path), timeout=busy_timeout, isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys=ON;")
    return db


class SqliteCounterStore(CounterStore):
    """
    Реляционный бэкенд: одна строка на идентификатор, запись — один
    INSERT ... ON CONFLICT(identity) DO UPDATE.

    strict=True: read-decide-write в update() идёт внутри BEGIN IMMEDIATE,
    параллельные запросы одного идентификатора выстраиваются в очередь.
    strict=False: SELECT и UPSERT отдельными автокоммитами, как было в исходной
    системе; параллельные запросы могут оба увидеть count < max и оба пройти.
    """

    name = "sqlite"

    def __init__(
        self,
        db_path: str | Path,
        *,
        strict: bool = True,
        fernet: Optional[Fernet] = None,
        busy_timeout: float = 5.0,
    ):
        self.db_path = Path(db_path)
        self.strict = bool(strict)
        self.fernet = fernet
        self.busy_timeout = float(busy_timeout)
        self._ready = False
        self._schema_lock = asyncio.Lock()

    async def _connect(self) -> aiosqlite.Connection:
        if not self._ready:
            async with self._schema_lock:
                if not self._ready:
                    await self._init_schema()
                    self._ready = True
        return await open_db(str(self.db_path), self.busy_timeout)

    async def _init_schema(self) -> None:
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await open_db(str(self.db_path), self.busy_timeout)
        try:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.executescript(SCHEMA)
        finally:
            await db.close()

    # -------- строки <-> записи --------

    def _row_to_record(self, row: aiosqlite.Row) -> IdentityRecord:
        try:
            metadata = decrypt_metadata(row["metadata"], self.fernet)
        except (InvalidToken, ValueError) as e:
            raise CorruptRecord(f"cannot decode metadata for {row['identity_prefix']}") from e
        return IdentityRecord.from_dict(
            {
                "identity": row["identity"],
                "identity_prefix": row["identity_prefix"],
                "count": row["count"],
                "total_attempts": row["total_attempts"],
                "first_seen": row["first_seen"],
                "last_seen": row["last_seen"],
                "created_at": row["created_at"],
                "grace_period_start": row["grace_period_start"],
                "blocked": bool(row["blocked"]),
                "blocked_at": row["blocked_at"],
                "max_count": row["max_count"],
                "metadata": metadata,
                "reset_count": row["reset_count"],
                "last_reset_at": row["last_reset_at"],
            }
        )

    def _record_params(self, rec: IdentityRecord) -> tuple:
        return (
            rec.identity,
            rec.identity_prefix,
            int(rec.count),
            int(rec.total_attempts),
            rec.first_seen,
            rec.last_seen,
            int(rec.created_at or time.time()),
            rec.grace_period_start,
            1 if rec.blocked else 0,
            rec.blocked_at,
            rec.max_count,
            encrypt_metadata(rec.metadata, self.fernet),
            int(rec.reset_count),
            rec.last_reset_at,
        )

    async def _fetch(self, db: aiosqlite.Connection, identity: str) -> Optional[IdentityRecord]:
        cur = await db.execute(f"SELECT {_COLUMNS} FROM identity_limits WHERE identity=? LIMIT 1", (identity,))
        row = await cur.fetchone()
        await cur.close()
        return self._row_to_record(row) if row else None

    # -------- CounterStore --------

    async def get_record(self, identity: str) -> Optional[IdentityRecord]:
        try:
            db = await self._connect()
            try:
                return await self._fetch(db, identity)
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"get_record failed: {e}") from e

    async def upsert(self, record: IdentityRecord) -> None:
        try:
            db = await self._connect()
            try:
                await db.execute(_UPSERT, self._record_params(record))
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"upsert failed: {e}") from e

    async def update(self, identity: str, mutate: Mutator) -> T:
        try:
            db = await self._connect()
            try:
                if not self.strict:
                    current = await self._fetch(db, identity)
                    new, result = mutate(current)
                    if new is not None:
                        await db.execute(_UPSERT, self._record_params(new))
                    return result

                await db.execute("BEGIN IMMEDIATE")
                try:
                    current = await self._fetch(db, identity)
                    new, result = mutate(current)
                    if new is not None:
                        await db.execute(_UPSERT, self._record_params(new))
                    await db.execute("COMMIT")
                except Exception:
                    await db.execute("ROLLBACK")
                    raise
                return result
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"update failed: {e}") from e

    async def records(self) -> List[IdentityRecord]:
        try:
            db = await self._connect()
            try:
                cur = await db.execute(f"SELECT {_COLUMNS} FROM identity_limits ORDER BY last_seen DESC")
                rows = await cur.fetchall()
                await cur.close()
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"records scan failed: {e}") from e

        out: List[IdentityRecord] = []
        for row in rows:
            try:
                out.append(self._row_to_record(row))
            except CorruptRecord:
                log.warning("skipping malformed row %s", row["identity_prefix"])
        return out

    async def describe(self) -> dict:
        return {"backend": self.name, "db_path": str(self.db_path), "strict": self.strict}

    # -------- миграция и бэкап --------

    async def import_records(self, records: Iterable[IdentityRecord]) -> int:
        """Переносит записи одной транзакцией (например, из файлового хранилища)."""
        n = 0
        try:
            db = await self._connect()
            try:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    for rec in records:
                        await db.execute(_UPSERT, self._record_params(rec))
                        n += 1
                    await db.execute("COMMIT")
                except Exception:
                    await db.execute("ROLLBACK")
                    raise
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"import failed: {e}") from e
        return n

    async def export_json(self, path: str | Path) -> Dict[str, Any]:
        """Бэкап всех записей в JSON (формат совместим с файловым хранилищем)."""
        records = await self.records()
        payload = json.dumps({r.identity: r.to_dict() for r in records}, ensure_ascii=False, indent=2)
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=target.name + ".tmp.", dir=str(target.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, target)
        return {"success": True, "users_backed_up": len(records), "file_size": target.stat().st_size}

    # -------- журнал активности --------

    async def log_activity(
        self,
        identity_prefix: str,
        action: str,
        component: str,
        meta: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> None:
        ts = int(time.time() if now is None else now)
        try:
            db = await self._connect()
            try:
                await db.execute(
                    "INSERT INTO activity_log(identity_prefix, action, component, created_at, meta) VALUES(?,?,?,?,?)",
                    (identity_prefix, action, component, ts, json.dumps(meta or {}, ensure_ascii=False)),
                )
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"activity insert failed: {e}") from e

    async def activity_counts(self, hours: int = 24, now: Optional[float] = None) -> List[dict]:
        since = int(time.time() if now is None else now) - int(hours) * 3600
        try:
            db = await self._connect()
            try:
                cur = await db.execute(
                    """
                    SELECT action, COUNT(*) AS cnt
                    FROM activity_log
                    WHERE created_at >= ?
                    GROUP BY action
                    ORDER BY cnt DESC
                    """,
                    (since,),
                )
                rows = await cur.fetchall()
                await cur.close()
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"activity summary failed: {e}") from e
        return [{"action": row["action"], "count": int(row["cnt"])} for row in rows]

    async def prune_activity(self, days: int = 30, now: Optional[float] = None) -> int:
        cutoff = int(time.time() if now is None else now) - int(days) * 24 * 3600
        try:
            db = await self._connect()
            try:
                cur = await db.execute("DELETE FROM activity_log WHERE created_at < ?", (cutoff,))
                deleted = cur.rowcount
                await cur.close()
            finally:
                await db.close()
        except aiosqlite.Error as e:
            raise StoreError(f"activity prune failed: {e}") from e
        return int(deleted or 0)
