# gatekeeper/limits.py — ЕДИНАЯ РЕАЛИЗАЦИЯ
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .audit import AuditSink, NullAuditSink, make_audit_sink
from .limit_notice import pick_limit_notice
from .records import IdentityRecord
from .security import is_authorized, resolve_bypass
from .store import CounterStore, make_store
from .validator import identity_prefix, normalize

log = logging.getLogger(__name__)

COMPONENT = "rate_limiter"


class State(str, Enum):
    ALLOWED = "allowed"
    LIMIT_REACHED = "limit_reached"
    GRACE_PERIOD = "grace_period"
    PERMANENTLY_BLOCKED = "permanently_blocked"
    INVALID_IDENTITY = "invalid_identity"
    INTERNAL_ERROR = "internal_error"


@dataclass
class AdmissionResult:
    state: State
    can_proceed: bool
    count: int
    max_count: int
    message: str
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def remaining(self) -> int:
        return max(0, self.max_count - self.count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "can_proceed": self.can_proceed,
            "count": self.count,
            "max_count": self.max_count,
            "remaining": self.remaining,
            "message": self.message,
            "extra": dict(self.extra),
        }


# решение внутри store.update: результат + что отправить в аудит
_Decision = Tuple[AdmissionResult, Optional[str]]


class AdmissionController:
    """
    Автомат допуска сообщений для одного идентификатора.

    Порядок для вызывающего кода: check_limit (или get_status) -> внешний вызов ->
    increment_usage только после подтверждённого успеха. Упавший внешний вызов
    квоту не тратит.

    Жизненный цикл: allowed -> limit_reached (стартует грейс) -> grace_period ->
    permanently_blocked. Выход из последнего — только через reset_user.
    Грейс учитывается всегда; окно 0 минут даёт жёсткий потолок.

    Любая ошибка хранилища превращается в internal_error с can_proceed=False:
    при сбоях мы закрываемся, а не открываемся.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        max_count: int = 5,
        grace_period_minutes: float = 1,
        secret: str = "",
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
        upgrade_url: str = "",
    ):
        self.store = store
        self.max_count = int(max_count)
        self.grace_period_minutes = grace_period_minutes
        self.secret = secret
        self.audit = audit or NullAuditSink()
        self.clock = clock
        self.upgrade_url = upgrade_url

    @classmethod
    def from_settings(cls, settings, store: Optional[CounterStore] = None, audit: Optional[AuditSink] = None):
        store = store or make_store(settings)
        return cls(
            store,
            max_count=settings.max_messages,
            grace_period_minutes=settings.grace_period_minutes,
            secret=settings.admin_secret,
            audit=audit if audit is not None else make_audit_sink(store),
            upgrade_url=settings.upgrade_url,
        )

    # -------- вспомогательное --------

    def _now(self) -> int:
        return int(self.clock())

    def _today(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime("%Y-%m-%d")

    @property
    def grace_seconds(self) -> int:
        return int(float(self.grace_period_minutes) * 60)

    def _grace_left(self, rec: IdentityRecord, now: int) -> Optional[int]:
        """Секунд до конца грейса; None — грейс не запущен."""
        if rec.grace_period_start is None:
            return None
        return self.grace_seconds - (now - int(rec.grace_period_start))

    @staticmethod
    def _block(rec: IdentityRecord, now: int) -> None:
        rec.blocked = True
        rec.blocked_at = now
        rec.grace_period_start = None

    def _start_grace(self, rec: IdentityRecord, now: int) -> None:
        if self.grace_seconds <= 0:
            self._block(rec, now)
        else:
            rec.grace_period_start = now

    def _result(
        self,
        state: State,
        can_proceed: bool,
        count: int,
        max_count: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> AdmissionResult:
        limit = self.max_count if max_count is None else int(max_count)
        extra = extra or {}
        if message is None:
            message = pick_limit_notice(
                state.value,
                max_count=limit,
                grace_minutes=extra.get("grace_remaining_minutes"),
                upgrade_url=self.upgrade_url,
            )
        return AdmissionResult(state, can_proceed, int(count), limit, message, extra)

    def _invalid(self) -> AdmissionResult:
        return self._result(State.INVALID_IDENTITY, False, 0)

    async def _internal_error(self, key: str, op: str, exc: BaseException) -> AdmissionResult:
        log.error("%s failed for user=%s: %r", op, identity_prefix(key), exc, exc_info=exc)
        await self._audit(key, "system_error", {"operation": op, "error_message": str(exc)})
        return self._result(State.INTERNAL_ERROR, False, 0)

    async def _audit(self, key: str, action: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        if not action:
            return
        try:
            await self.audit.log(key, action, COMPONENT, metadata or {})
        except Exception:
            # решение уже принято, аудит его не отменяет
            log.exception("audit sink failed on %s for user=%s", action, identity_prefix(key))

    async def _bypass_granted(self, key: str, bypass: Any) -> bool:
        resolved = resolve_bypass(bypass)
        if resolved is None:
            return False
        if is_authorized(key, resolved, self.secret, today=self._today()):
            await self._audit(key, "admin_bypass")
            return True
        log.warning("invalid admin bypass attempt for user=%s", identity_prefix(key))
        return False

    def _status_from_record(self, rec: Optional[IdentityRecord], now: int) -> AdmissionResult:
        if rec is None:
            return self._result(State.ALLOWED, True, 0, extra={"new_identity": True, "remaining_messages": self.max_count})
        limit = rec.limit(self.max_count)
        if rec.blocked:
            return self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit)
        if rec.count >= limit:
            extra = {}
            left = self._grace_left(rec, now)
            if left is not None and left > 0:
                extra["grace_remaining_minutes"] = math.ceil(left / 60)
            return self._result(State.LIMIT_REACHED, False, rec.count, limit, extra)
        return self._result(State.ALLOWED, True, rec.count, limit, {"remaining_messages": limit - rec.count})

    # -------- публичное API --------

    async def get_status(self, identity: Any) -> AdmissionResult:
        """Только чтение: безопасно звать до любой дорогой работы."""
        now = self._now()
        key = normalize(identity, now)
        if key is None:
            return self._invalid()
        try:
            rec = await self.store.get_record(key)
        except Exception as e:
            return await self._internal_error(key, "get_status", e)
        return self._status_from_record(rec, now)

    async def check_limit(self, identity: Any, bypass: Any = None) -> AdmissionResult:
        """
        Полная проверка с грейсом. Неизвестный идентификатор заводится с count=0.
        Грейс идёт — grace_period; истёк — блок навсегда (запись идемпотентна).
        На самом пороге (count == max) стартует грейс, а попытка учитывается один раз.
        """
        now = self._now()
        key = normalize(identity, now)
        if key is None:
            return self._invalid()
        if await self._bypass_granted(key, bypass):
            return self._result(State.ALLOWED, True, 0, extra={"admin_bypass": True}, message="Admin bypass granted")

        def decide(rec: Optional[IdentityRecord]) -> Tuple[Optional[IdentityRecord], _Decision]:
            if rec is None:
                rec = IdentityRecord.fresh(key, now)
                return rec, (self._result(State.ALLOWED, True, 0, extra={"new_identity": True}), None)

            limit = rec.limit(self.max_count)
            if rec.blocked:
                return None, (self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit), "blocked_attempt")

            left = self._grace_left(rec, now)
            if left is not None:
                if left > 0:
                    extra = {"grace_remaining_minutes": math.ceil(left / 60)}
                    return None, (self._result(State.GRACE_PERIOD, False, rec.count, limit, extra), "grace_period_attempt")
                self._block(rec, now)
                return rec, (self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit), "permanently_blocked")

            if rec.count >= limit:
                if rec.count == limit:
                    rec.count += 1
                    rec.total_attempts += 1
                    rec.last_seen = now
                self._start_grace(rec, now)
                if rec.blocked:
                    return rec, (self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit), "permanently_blocked")
                extra = {"grace_remaining_minutes": math.ceil(self.grace_seconds / 60)}
                return rec, (self._result(State.LIMIT_REACHED, False, rec.count, limit, extra), "grace_period_started")

            return None, (self._result(State.ALLOWED, True, rec.count, limit, {"remaining_messages": limit - rec.count}), None)

        try:
            result, action = await self.store.update(key, decide)
        except Exception as e:
            return await self._internal_error(key, "check_limit", e)
        await self._audit(key, action, {"count": result.count})
        return result

    async def increment_usage(self, identity: Any, bypass: Any = None) -> AdmissionResult:
        """
        Списывает одно сообщение. Звать только после того, как внешний вызов
        подтвердил успех. count никогда не поднимается выше потолка: за порогом
        растёт только total_attempts.
        """
        now = self._now()
        key = normalize(identity, now)
        if key is None:
            return self._invalid()
        if await self._bypass_granted(key, bypass):
            return self._result(
                State.ALLOWED, True, 0,
                extra={"admin_bypass": True, "increment_skipped": True},
                message="Admin bypass - increment skipped",
            )

        def decide(rec: Optional[IdentityRecord]) -> Tuple[Optional[IdentityRecord], _Decision]:
            if rec is None:
                rec = IdentityRecord.fresh(key, now)
            limit = rec.limit(self.max_count)

            if rec.blocked:
                rec.total_attempts += 1
                return rec, (self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit), "blocked_attempt")

            left = self._grace_left(rec, now)
            if left is not None:
                rec.total_attempts += 1
                if left > 0:
                    extra = {"grace_remaining_minutes": math.ceil(left / 60)}
                    return rec, (self._result(State.GRACE_PERIOD, False, rec.count, limit, extra), "grace_period_attempt")
                self._block(rec, now)
                return rec, (self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit), "permanently_blocked")

            if rec.count >= limit:
                rec.total_attempts += 1
                self._start_grace(rec, now)
                if rec.blocked:
                    return rec, (self._result(State.PERMANENTLY_BLOCKED, False, rec.count, limit), "rate_limit_exceeded")
                extra = {"grace_remaining_minutes": math.ceil(self.grace_seconds / 60)}
                return rec, (self._result(State.LIMIT_REACHED, False, rec.count, limit, extra), "rate_limit_exceeded")

            first = rec.first_seen is None
            rec.count += 1
            rec.total_attempts += 1
            rec.last_seen = now
            if first:
                rec.first_seen = now

            if rec.count >= limit:
                # это сообщение засчитано, дальше только грейс
                self._start_grace(rec, now)
                extra = {"incremented": True, "blocked": rec.blocked}
                if not rec.blocked:
                    extra["grace_remaining_minutes"] = math.ceil(self.grace_seconds / 60)
                return rec, (self._result(State.LIMIT_REACHED, True, rec.count, limit, extra), "grace_period_started")

            extra = {"incremented": True, "remaining_messages": limit - rec.count}
            return rec, (self._result(State.ALLOWED, True, rec.count, limit, extra), "first_message" if first else "message_sent")

        try:
            result, action = await self.store.update(key, decide)
        except Exception as e:
            return await self._internal_error(key, "increment_usage", e)
        await self._audit(key, action, {"count": result.count})
        return result

    async def reset_user(self, identity: Any, bypass: Any) -> bool:
        """
        Сброс счётчиков оператором. total_attempts остаётся как историческая
        сумма, created_at и first_seen не трогаем, reset_count растёт.
        """
        now = self._now()
        key = normalize(identity, now)
        if key is None:
            return False
        resolved = resolve_bypass(bypass)
        if not is_authorized(key, resolved, self.secret, today=self._today()):
            log.warning("reset refused for user=%s: invalid admin token", identity_prefix(key))
            return False

        def decide(rec: Optional[IdentityRecord]) -> Tuple[Optional[IdentityRecord], bool]:
            if rec is None:
                return None, False
            rec.count = 0
            rec.blocked = False
            rec.blocked_at = None
            rec.grace_period_start = None
            rec.reset_count += 1
            rec.last_reset_at = now
            return rec, True

        try:
            done = await self.store.update(key, decide)
        except Exception as e:
            log.error("reset failed for user=%s: %r", identity_prefix(key), e, exc_info=e)
            return False
        if done:
            log.info("user reset by admin: %s", identity_prefix(key))
            await self._audit(key, "admin_reset")
        return done

    async def get_user_stats(self, identity: Any) -> AdmissionResult:
        """Снимок записи + остаток и процент использования (для операторов)."""
        now = self._now()
        key = normalize(identity, now)
        if key is None:
            return self._invalid()
        try:
            rec = await self.store.get_record(key)
        except Exception as e:
            return await self._internal_error(key, "get_user_stats", e)

        result = self._status_from_record(rec, now)
        snapshot = rec.to_dict() if rec else None
        if snapshot:
            snapshot.pop("identity", None)
        result.extra.update(
            {
                "user_record": snapshot,
                "remaining_messages": result.remaining,
                "usage_percentage": round(result.count / result.max_count * 100, 1) if result.max_count else 0.0,
            }
        )
        return result

    async def is_blocked(self, identity: Any) -> bool:
        """Заблокирован или грейс уже истёк. Ничего не пишет; сбой хранилища — True."""
        now = self._now()
        key = normalize(identity, now)
        if key is None:
            return False
        try:
            rec = await self.store.get_record(key)
        except Exception as e:
            log.error("is_blocked failed for user=%s: %r", identity_prefix(key), e, exc_info=e)
            return True
        if rec is None:
            return False
        if rec.blocked:
            return True
        left = self._grace_left(rec, now)
        return left is not None and left <= 0

    async def run_gated(
        self,
        identity: Any,
        action: Callable[[], Awaitable[Any]],
        bypass: Any = None,
    ) -> Tuple[AdmissionResult, Any]:
        """
        check -> act -> count. Исключение из action пробрасывается наружу,
        квота при этом не списывается.
        """
        verdict = await self.check_limit(identity, bypass)
        if not verdict.can_proceed:
            return verdict, None
        value = await action()
        if verdict.extra.get("admin_bypass"):
            return verdict, value
        return await self.increment_usage(identity), value

    async def get_system_stats(self) -> Dict[str, Any]:
        """Агрегаты для дашбордов: один read-only проход по хранилищу."""
        now = self._now()
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        # сутки по UTC: [day_start, day_start + 86400)
        day_start = now - now % 86400
        try:
            records = await self.store.records()
            storage = await self.store.describe()
            total = len(records)
            counts = [r.count for r in records]
            stats: Dict[str, Any] = {
                "success": True,
                "total_identities": total,
                "blocked": sum(1 for r in records if r.blocked),
                "active_today": sum(1 for r in records if r.last_seen and day_start <= r.last_seen < day_start + 86400),
                "avg_count": round(sum(counts) / total, 2) if total else 0.0,
                "users_at_limit": sum(1 for r in records if r.count >= r.limit(self.max_count)),
                "in_grace": sum(1 for r in records if r.grace_period_start is not None and not r.blocked),
                "total_messages": sum(counts),
                "max_count_single": max(counts) if counts else 0,
                "configuration": {
                    "max_count": self.max_count,
                    "grace_period_minutes": self.grace_period_minutes,
                },
                "storage": storage,
                "timestamp": stamp,
            }
        except Exception as e:
            log.error("get_system_stats failed: %r", e, exc_info=e)
            return {"success": False, "error": str(e), "timestamp": stamp}

        summary = getattr(self.audit, "activity_counts", None)
        if summary is not None:
            try:
                stats["activity_24h"] = await summary(24)
            except Exception:
                log.exception("activity summary failed")
                stats["activity_24h"] = []
        return stats
