# counter_server.py
import logging
import os
import sys

from aiohttp import web

from gatekeeper.config import settings
from gatekeeper.http_api import build_app
from gatekeeper.limits import AdmissionController
from gatekeeper.prefilter import ValidationThrottle

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("counter_server")


def main() -> None:
    try:
        controller = AdmissionController.from_settings(settings)
    except Exception:
        log.exception("cannot initialise storage backend %r", settings.store_backend)
        sys.exit(1)

    log.info(
        "Starting counter endpoint on %s:%s (backend=%s, max=%s, grace=%smin)",
        settings.http_host, settings.http_port, settings.store_backend,
        settings.max_messages, settings.grace_period_minutes,
    )
    if not settings.admin_secret:
        log.warning("ADMIN_SECRET is empty: bypass tokens are disabled")

    app = build_app(controller, ValidationThrottle(limit=settings.validation_rate_per_minute))
    web.run_app(app, host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n[CTRL+C] Stopped")
