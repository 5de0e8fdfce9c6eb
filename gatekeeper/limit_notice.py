# gatekeeper/limit_notice.py
from typing import Optional

# Тексты, которые уходят клиенту вместе с решением; ключ — значение State
_TEXTS = {
    "allowed": "Message allowed",
    "limit_reached": "You have reached the limit of {max_count} messages.",
    "grace_period": "Grace period active. Wait {minutes} more minute(s).",
    "permanently_blocked": "Your trial has expired.",
    "invalid_identity": "Invalid user ID format",
    "internal_error": "Internal system error",
}


def pick_limit_notice(
    state: str,
    *,
    max_count: int = 0,
    grace_minutes: Optional[int] = None,
    upgrade_url: str = "",
) -> str:
    """
    Текст для состояния. На пороге добавляем, сколько минут осталось
    на завершение разговора, а в тупиковых состояниях — ссылку на подписку.
    """
    text = _TEXTS.get(state, _TEXTS["internal_error"]).format(max_count=max_count, minutes=grace_minutes or 0)
    if state == "limit_reached" and grace_minutes:
        text += f" You have {grace_minutes} minute(s) to finish the conversation."
    if upgrade_url and state in ("limit_reached", "grace_period", "permanently_blocked"):
        text += f" Subscribe at {upgrade_url}"
    return text
