import hmac, hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from cryptography.fernet import Fernet


# ---------- Bypass для операторов ----------

@dataclass(frozen=True)
class OperatorBypass:
    """Доверенный путь внутри процесса: вызывающий код уже проверил оператора сам."""


@dataclass(frozen=True)
class TokenBypass:
    token: str


Bypass = Union[OperatorBypass, TokenBypass]


def resolve_bypass(raw: Any) -> Optional[Bypass]:
    """
    Разбирает «сырое» значение с границы ровно один раз:
    True -> OperatorBypass, непустая строка -> TokenBypass, остальное -> None.
    """
    if isinstance(raw, (OperatorBypass, TokenBypass)):
        return raw
    if raw is True:
        return OperatorBypass()
    if isinstance(raw, str) and raw.strip():
        return TokenBypass(raw.strip())
    return None


def _utc_day(day: Optional[Union[date, str]] = None) -> str:
    if day is None:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")
    if isinstance(day, str):
        return day
    return day.strftime("%Y-%m-%d")


def issue_bypass_token(identity: str, secret: str, day: Optional[Union[date, str]] = None) -> str:
    """HMAC-SHA256(secret, "YYYY-MM-DD" + identity). Живёт ровно одни сутки по UTC."""
    msg = (_utc_day(day) + identity).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def is_authorized(
    identity: str,
    bypass: Optional[Bypass],
    secret: str,
    today: Optional[Union[date, str]] = None,
) -> bool:
    """Молча возвращает False на любой отказ; алерты на повторы — забота вызывающего."""
    if isinstance(bypass, OperatorBypass):
        return True
    if not isinstance(bypass, TokenBypass) or not secret or not identity:
        return False
    expected = issue_bypass_token(identity, secret, today)
    return hmac.compare_digest(expected.encode("utf-8"), bypass.token.encode("utf-8"))


# ---------- Шифрование metadata ----------

def make_fernet(key: str) -> Optional[Fernet]:
    return Fernet(key.encode()) if key else None


def encrypt_metadata(metadata: Dict[str, Any], fernet: Optional[Fernet]) -> bytes:
    payload = json.dumps(metadata or {}, ensure_ascii=False).encode("utf-8")
    if not fernet:
        return payload
    return fernet.encrypt(payload)


def decrypt_metadata(blob: Optional[bytes], fernet: Optional[Fernet]) -> Dict[str, Any]:
    if not blob:
        return {}
    if isinstance(blob, str):
        blob = blob.encode("utf-8")
    raw = fernet.decrypt(blob) if fernet else blob
    obj = json.loads(raw.decode("utf-8"))
    return obj if isinstance(obj, dict) else {}
