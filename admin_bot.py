# admin_bot.py
import asyncio, logging, os, sys, traceback

try:
    from aiogram import Bot, Dispatcher
    from aiogram.client.default import DefaultBotProperties
    from gatekeeper.config import settings
    from gatekeeper.handlers import admin_limits
    from gatekeeper.limits import AdmissionController
except Exception as e:
    print(">>> IMPORT FAIL:", repr(e), flush=True)
    traceback.print_exc()
    sys.exit(2)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("admin_starter")


async def main() -> None:
    token = (settings.admin_bot_token or "").strip()
    if not token:
        log.error("ADMIN_BOT_TOKEN is empty. cwd=%s (.env must live here)", os.getcwd())
        sys.exit(1)
    if not settings.admin_ids:
        log.warning("ADMIN_IDS is empty: every command will be refused")

    log.info("ADMIN_BOT_TOKEN startswith: %s***", token[:10])

    controller = AdmissionController.from_settings(settings)
    log.info("Storage: %s", await controller.store.describe())

    bot = Bot(token=token, default=DefaultBotProperties(parse_mode="HTML"))
    dp = Dispatcher()
    dp["controller"] = controller
    dp.include_router(admin_limits.router)

    # Пробный вызов get_me — сразу видно, если токен некорректен
    try:
        me = await bot.get_me()
        log.info("get_me: id=%s username=@%s", me.id, me.username)
    except Exception:
        log.exception("get_me failed (check token/network)")
        raise

    log.info("Starting admin polling…")
    try:
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    except Exception:
        log.exception("start_polling crashed")
        raise
    finally:
        log.info("Closing admin bot session…")
        try:
            await bot.session.close()
        except Exception:
            log.exception("Close session error")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n[CTRL+C] Stopped (admin)", flush=True)
