# gatekeeper/validator.py
from __future__ import annotations

import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Идентификатор приходит из браузерного fingerprinting и доверять ему нельзя,
# пока он не прошёл проверку формы.

PREFIX = "fp"
PREFIX_LEN = 20  # сколько символов идентификатора допустимо светить в логах

_LEGACY_RE = re.compile(r"^[a-f0-9]{64}$")
_COMPOSITE_RE = re.compile(r"^fp_([a-f0-9]{64})_([a-z0-9]+)$")
_EMERGENCY_RE = re.compile(r"^fp_emergency_[a-z0-9]+_[a-z0-9]+$")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_]")

_COMPOSITE_MIN_LEN = 70
_COMPOSITE_MAX_LEN = 200

WINDOW_PAST_MS = 7 * 24 * 3600 * 1000
WINDOW_FUTURE_MS = 3600 * 1000

KIND_LEGACY = "legacy"
KIND_COMPOSITE = "composite"
KIND_EMERGENCY = "emergency"


def _now_ms(now: Optional[float]) -> int:
    return int((time.time() if now is None else now) * 1000)


def _base36(s: str) -> Optional[int]:
    try:
        return int(s, 36)
    except ValueError:
        return None


def identity_kind(token: Any) -> Optional[str]:
    """
    Определяет форму идентификатора без проверки свежести:
    legacy (голый sha-256), composite (fp_<hash>_<ts36>) или emergency.
    """
    if not isinstance(token, str):
        return None
    t = token.strip()
    if not t:
        return None
    if len(t) == 64 and _LEGACY_RE.match(t):
        return KIND_LEGACY
    if t.startswith(PREFIX + "_emergency_"):
        return KIND_EMERGENCY if _EMERGENCY_RE.match(t) else None
    if _COMPOSITE_MIN_LEN <= len(t) <= _COMPOSITE_MAX_LEN and _COMPOSITE_RE.match(t):
        return KIND_COMPOSITE
    return None


def validate(token: Any, now: Optional[float] = None) -> bool:
    """
    True, если token — допустимый идентификатор.
    Для composite-формы метка времени (base36, миллисекунды) должна лежать
    в окне [now - 7 дней, now + 1 час].
    """
    kind = identity_kind(token)
    if kind is None:
        return False
    if kind != KIND_COMPOSITE:
        return True

    m = _COMPOSITE_RE.match(token.strip())
    ts = _base36(m.group(2))
    if ts is None:
        return False
    now_ms = _now_ms(now)
    return now_ms - WINDOW_PAST_MS <= ts <= now_ms + WINDOW_FUTURE_MS


def normalize(token: Any, now: Optional[float] = None) -> Optional[str]:
    """Валидирует и вычищает всё, кроме [A-Za-z0-9_]. None — если идентификатор негоден."""
    if not validate(token, now):
        return None
    return _UNSAFE_RE.sub("", token.strip())


def identity_prefix(token: Any) -> str:
    """Короткий префикс для логов; полный идентификатор никогда не логируем."""
    s = str(token or "")
    return (s[:PREFIX_LEN] + "...") if s else "null"


def parse_identity(token: Any, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """
    Разбирает composite-идентификатор:
      {"hash": str, "timestamp_ms": int, "created": iso-str, "age_hours": float}
    Для legacy возвращается только hash, для emergency и мусора — None.
    """
    if not validate(token, now):
        return None
    t = token.strip()
    kind = identity_kind(t)
    if kind == KIND_LEGACY:
        return {"hash": t, "timestamp_ms": None, "created": None, "age_hours": None}
    if kind != KIND_COMPOSITE:
        return None

    m = _COMPOSITE_RE.match(t)
    ts = _base36(m.group(2)) or 0
    created = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
    return {
        "hash": m.group(1),
        "timestamp_ms": ts,
        "created": created.strftime("%Y-%m-%d %H:%M:%S"),
        "age_hours": (_now_ms(now) - ts) / (3600 * 1000),
    }


def is_expired(token: Any, max_age_hours: float = 168, now: Optional[float] = None) -> bool:
    """
    Слишком старый идентификатор (для будущих чисток).
    Невалидные считаем протухшими; legacy и emergency возраста не имеют.
    """
    if not validate(token, now):
        return True
    info = parse_identity(token, now)
    if info is None or info["age_hours"] is None:
        return False
    return info["age_hours"] > max_age_hours


def raw_user_id(payload: Any) -> Any:
    """
    Достаёт user_id из входных данных запроса: сырая строка, JSON-строка
    или словарь с ключом user_id. None — идентификатор не передан вовсе;
    всё остальное (в том числе мусор) возвращается как есть, без проверки.
    """
    value = payload
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            # передано, но не текст: пусть validate отвергнет байты целиком
            return bytes(value)
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            value = decoded.get("user_id")
    elif isinstance(value, dict):
        value = value.get("user_id")
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return value


def identity_from_payload(payload: Any) -> Optional[str]:
    """Нормализованный идентификатор из запроса или None."""
    value = raw_user_id(payload)
    if not isinstance(value, str):
        return None
    return normalize(value.strip())
