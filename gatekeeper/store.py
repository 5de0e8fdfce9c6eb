# gatekeeper/store.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple, TypeVar

if TYPE_CHECKING:
    from .records import IdentityRecord

T = TypeVar("T")

# mutate(record | None) -> (что записать | None, что вернуть наружу)
Mutator = Callable[[Optional["IdentityRecord"]], Tuple[Optional["IdentityRecord"], T]]


class StoreError(Exception):
    """Хранилище недоступно или вернуло мусор."""


class LockTimeout(StoreError):
    """Не дождались эксклюзивной блокировки за отведённое время."""


class CorruptRecord(StoreError):
    """Сохранённая запись не разбирается (битые типы, отрицательные счётчики и т.п.)."""


class CounterStore(ABC):
    """
    Долговременное хранилище счётчиков: одна запись на идентификатор.
    Гарантия — не больше одного писателя на идентификатор одновременно.
    """

    name = "abstract"

    @abstractmethod
    async def get_record(self, identity: str) -> Optional[IdentityRecord]:
        ...

    @abstractmethod
    async def upsert(self, record: IdentityRecord) -> None:
        ...

    @abstractmethod
    async def update(self, identity: str, mutate: Mutator) -> T:
        """
        Read-modify-write для одного идентификатора. Насколько это атомарно
        целиком — зависит от бэкенда (см. реализации).
        """

    @abstractmethod
    async def records(self) -> List[IdentityRecord]:
        """Полный read-only проход для статистики."""

    async def describe(self) -> dict:
        return {"backend": self.name}


def make_store(settings) -> CounterStore:
    """Выбор бэкенда по STORE_BACKEND: file | sqlite."""
    backend = (settings.store_backend or "file").strip().lower()
    if backend == "file":
        from .file_store import FileCounterStore

        return FileCounterStore(
            settings.data_file,
            lock_timeout=settings.lock_timeout,
            lock_poll=settings.lock_poll,
        )
    if backend in ("sqlite", "db"):
        from .db import SqliteCounterStore
        from .security import make_fernet

        return SqliteCounterStore(
            settings.db_path,
            strict=settings.db_strict_updates,
            fernet=make_fernet(settings.metadata_fernet_key),
        )
    raise ValueError(f"unknown STORE_BACKEND: {settings.store_backend!r}")
