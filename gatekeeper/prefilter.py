import time
from collections import deque
from typing import Deque, Dict, Optional


class ValidationThrottle:
    """
    Анти-спам на проверку идентификаторов: не более limit запросов
    за window секунд с одного клиентского адреса (простая in-memory реализация).
    Адреса без свежих обращений выкидываются, карта не растёт бесконечно.
    """

    def __init__(self, limit: int = 60, window: float = 60.0):
        self.limit = int(limit)
        self.window = float(window)
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = 0.0

    def _sweep(self, now: float) -> None:
        stale = [c for c, dq in self._hits.items() if not dq or (now - dq[-1]) >= self.window]
        for c in stale:
            del self._hits[c]
        self._last_sweep = now

    def allow(self, client: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if now - self._last_sweep >= self.window:
            self._sweep(now)

        dq = self._hits.setdefault(client or "unknown", deque())
        while dq and (now - dq[0]) >= self.window:
            dq.popleft()
        if len(dq) >= self.limit:
            return False
        dq.append(now)
        return True

    def forget(self, client: str) -> None:
        self._hits.pop(client or "unknown", None)

    def __len__(self) -> int:
        return len(self._hits)
