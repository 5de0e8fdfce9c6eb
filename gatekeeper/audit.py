# gatekeeper/audit.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from .validator import identity_prefix

log = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def log(self, identity: str, action: str, component: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        ...


class NullAuditSink:
    """По умолчанию события никуда не пишутся."""

    async def log(self, identity, action, component, metadata=None) -> None:
        return None


class LoggingAuditSink:
    """События в обычный лог процесса; только префикс идентификатора."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.logger = logger or logging.getLogger("gatekeeper.activity")
        self.level = level

    async def log(self, identity, action, component, metadata=None) -> None:
        self.logger.log(self.level, "%s %s user=%s %s", component, action, identity_prefix(identity), metadata or {})


class SqliteAuditSink:
    """Таблица activity_log в той же БД, что и счётчики."""

    def __init__(self, store):
        self.store = store

    async def log(self, identity, action, component, metadata=None) -> None:
        await self.store.log_activity(identity_prefix(identity), action, component, metadata)

    async def activity_counts(self, hours: int = 24) -> List[dict]:
        return await self.store.activity_counts(hours=hours)

    async def prune(self, days: int = 30) -> int:
        return await self.store.prune_activity(days=days)


def make_audit_sink(store) -> AuditSink:
    """Для sqlite-бэкенда пишем в activity_log, иначе — в лог."""
    if hasattr(store, "log_activity"):
        return SqliteAuditSink(store)
    return LoggingAuditSink()
