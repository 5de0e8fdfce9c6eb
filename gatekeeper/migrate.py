# gatekeeper/migrate.py
"""
Обслуживание хранилища счётчиков:

  python -m gatekeeper.migrate file-to-db [--data-file F] [--db-path D]
  python -m gatekeeper.migrate export --out backup.json [--db-path D]
  python -m gatekeeper.migrate prune [--days 30] [--db-path D]
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from .config import settings
from .db import SqliteCounterStore
from .file_store import FileCounterStore
from .security import make_fernet
from .store import StoreError

log = logging.getLogger(__name__)


def _sqlite(db_path: str) -> SqliteCounterStore:
    return SqliteCounterStore(
        db_path,
        strict=True,
        fernet=make_fernet(settings.metadata_fernet_key),
    )


async def file_to_db(data_file: str, db_path: str) -> dict:
    """Переносит все записи JSON-файла в БД; повторный запуск просто перезапишет строки."""
    source = FileCounterStore(data_file, lock_timeout=settings.lock_timeout, lock_poll=settings.lock_poll)
    records = await source.records()
    migrated = await _sqlite(db_path).import_records(records)
    log.info("migrated %s records from %s to %s", migrated, data_file, db_path)
    return {"success": True, "migrated": migrated, "source": data_file, "target": db_path}


async def export(db_path: str, out: str) -> dict:
    result = await _sqlite(db_path).export_json(out)
    log.info("backup written to %s (%s users)", out, result["users_backed_up"])
    return result


async def prune(db_path: str, days: int) -> dict:
    deleted = await _sqlite(db_path).prune_activity(days=days)
    log.info("pruned %s activity rows older than %s days", deleted, days)
    return {"success": True, "deleted": deleted, "days": days}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="gatekeeper.migrate")
    ap.add_argument("--db-path", default=settings.db_path, help="sqlite database (DB_PATH)")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("file-to-db", help="copy JSON file store into the database")
    p.add_argument("--data-file", default=settings.data_file, help="JSON document (DATA_FILE)")

    p = sub.add_parser("export", help="dump all records to a JSON backup")
    p.add_argument("--out", required=True, help="backup file path")

    p = sub.add_parser("prune", help="delete old activity log rows")
    p.add_argument("--days", type=int, default=30, help="retention days")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "file-to-db":
            result = asyncio.run(file_to_db(args.data_file, args.db_path))
        elif args.command == "export":
            result = asyncio.run(export(args.db_path, args.out))
        else:
            result = asyncio.run(prune(args.db_path, args.days))
    except StoreError as e:
        log.error("%s failed: %s", args.command, e)
        print(json.dumps({"success": False, "error": str(e)}, ensure_ascii=False))
        return 1
    print(json.dumps(result, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    sys.exit(main())
