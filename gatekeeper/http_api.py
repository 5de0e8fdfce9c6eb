# gatekeeper/http_api.py
from __future__ import annotations

import logging
from typing import Any, Optional

from aiohttp import web

from .limits import AdmissionController
from .prefilter import ValidationThrottle
from .validator import raw_user_id

log = logging.getLogger(__name__)

CONTROLLER_KEY = web.AppKey("controller", AdmissionController)
THROTTLE_KEY = web.AppKey("throttle", ValidationThrottle)


def _client_address(request: web.Request) -> str:
    return request.remote or "unknown"


async def _identity_from_request(request: web.Request) -> Any:
    """
    Сначала заголовок X-User-ID, потом поле user_id в JSON-теле.
    Возвращает переданное значение без проверки; None — ничего не передано.
    """
    header = request.headers.get("X-User-ID")
    if header and header.strip():
        return raw_user_id(header)
    if not request.can_read_body:
        return None
    raw = await request.read()
    return raw_user_id(raw) if raw else None


async def counter(request: web.Request) -> web.Response:
    """
    Состояние квоты для виджета. Ничего не списывает: это get_status.
    Без идентификатора отвечаем нулевым счётчиком со статусом no_user_id,
    с негодным — invalid_identity от контроллера.
    """
    controller = request.app[CONTROLLER_KEY]
    throttle = request.app[THROTTLE_KEY]

    client = _client_address(request)
    if not throttle.allow(client):
        log.warning("validation rate limit exceeded for %s", client)
        return web.json_response({"error": "Too many requests", "status": "throttled"}, status=429)

    identity = await _identity_from_request(request)
    if identity is None:
        return web.json_response(
            {
                "count": 0,
                "max_count": controller.max_count,
                "remaining": controller.max_count,
                "status": "no_user_id",
                "can_send": False,
            }
        )

    result = await controller.get_status(identity)
    return web.json_response(
        {
            "count": result.count,
            "max_count": result.max_count,
            "remaining": result.remaining,
            "status": result.state.value,
            "can_send": result.can_proceed,
        }
    )


async def healthz(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


def register_routes(app: web.Application) -> None:
    app.router.add_post("/api/counter", counter)
    app.router.add_get("/healthz", healthz)


def build_app(controller: AdmissionController, throttle: Optional[ValidationThrottle] = None) -> web.Application:
    app = web.Application()
    app[CONTROLLER_KEY] = controller
    app[THROTTLE_KEY] = throttle or ValidationThrottle()
    register_routes(app)
    return app
