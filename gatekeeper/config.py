# gatekeeper/config.py
from pydantic import BaseModel
from typing import List, Optional
import os

from dotenv import load_dotenv

load_dotenv()  # читает .env из текущей рабочей директории


def _parse_int_list(env_value: Optional[str]) -> List[int]:
    """
    Преобразует строку вида "111,222,333" в [111, 222, 333].
    Пустые значения игнорируются. Невалидные элементы пропускаются.
    """
    if not env_value:
        return []
    out: List[int] = []
    for chunk in env_value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            out.append(int(chunk))
        except ValueError:
            # пропускаем нечисловые значения
            continue
    return out


def _parse_bool(env_value: Optional[str], default: bool) -> bool:
    if env_value is None or not env_value.strip():
        return default
    return env_value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    # --- Лимиты ---
    # Две интеграции исторически расходились (5 против 10), канон — 5
    max_messages: int = int(os.getenv("RATE_LIMIT_MAX_MESSAGES", "5"))
    grace_period_minutes: int = int(os.getenv("RATE_LIMIT_GRACE_PERIOD_MINUTES", "1"))

    # --- Security / Privacy ---
    # HMAC-секрет для суточных bypass-токенов операторов
    admin_secret: str = os.getenv("ADMIN_SECRET", "")
    # если задан — metadata в БД шифруется Fernet
    metadata_fernet_key: str = os.getenv("METADATA_FERNET_KEY", "")

    # --- Storage ---
    # "file" (JSON + flock) или "sqlite" (aiosqlite + upsert)
    store_backend: str = os.getenv("STORE_BACKEND", "file")
    data_file: str = os.getenv("DATA_FILE", "./data/user_limits.json")
    db_path: str = os.getenv("DB_PATH", "./data/limits.db")
    # True — read-decide-write в одной транзакции (BEGIN IMMEDIATE)
    db_strict_updates: bool = _parse_bool(os.getenv("DB_STRICT_UPDATES"), True)
    lock_timeout: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
    lock_poll: float = float(os.getenv("LOCK_POLL_SECONDS", "0.05"))

    # --- Edge ---
    validation_rate_per_minute: int = int(os.getenv("VALIDATION_RATE_PER_MINUTE", "60"))
    http_host: str = os.getenv("HTTP_HOST", "127.0.0.1")
    http_port: int = int(os.getenv("HTTP_PORT", "8080"))
    upgrade_url: str = os.getenv("UPGRADE_URL", "")

    # --- Telegram (операторский бот) ---
    admin_bot_token: str = os.getenv("ADMIN_BOT_TOKEN", "")
    # Список Telegram ID админов, через запятую: ADMIN_IDS=111111111,222222222
    admin_ids: List[int] = _parse_int_list(os.getenv("ADMIN_IDS"))


def load_settings(**overrides) -> Settings:
    """Свежий экземпляр настроек; overrides перебивают значения из окружения."""
    return Settings(**overrides)


settings = Settings()
