# gatekeeper/handlers/admin_limits.py
from __future__ import annotations

import html
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message

from ..config import settings
from ..limits import AdmissionController
from ..security import OperatorBypass, issue_bypass_token
from ..validator import identity_prefix, normalize

router = Router(name="admin_limits")
log = logging.getLogger(__name__)

# контроллер кладётся в dp["controller"] в admin_bot.py и приходит сюда аргументом


def _is_admin(user_id: int) -> bool:
    try:
        return int(user_id) in set(int(x) for x in settings.admin_ids)
    except (TypeError, ValueError):
        return False


def _parse_target(arg: Optional[str]) -> Optional[str]:
    if not arg:
        return None
    return normalize(arg.strip().split()[0])


def format_system_stats(stats: dict) -> str:
    if not stats.get("success"):
        return f"⚠️ Stats unavailable: <code>{html.escape(str(stats.get('error', 'unknown')))}</code>"
    cfg = stats.get("configuration", {})
    storage = stats.get("storage", {})
    lines = [
        "📈 <b>Rate limiter</b>",
        f"Identities: <b>{stats['total_identities']}</b>   Active today: <b>{stats['active_today']}</b>",
        f"At limit: <b>{stats['users_at_limit']}</b>   In grace: <b>{stats['in_grace']}</b>   Blocked: <b>{stats['blocked']}</b>",
        f"Messages: <b>{stats['total_messages']}</b>   Avg: <b>{stats['avg_count']}</b>   Max: <b>{stats['max_count_single']}</b>",
        "",
        f"Limit: {cfg.get('max_count')} msg, grace {cfg.get('grace_period_minutes')} min",
        f"Backend: <code>{html.escape(str(storage.get('backend', '?')))}</code>",
    ]
    activity = stats.get("activity_24h") or []
    if activity:
        lines.append("")
        lines.append("<b>Activity 24h</b>")
        for row in activity[:10]:
            lines.append(f"{html.escape(row['action'])}: {row['count']}")
    lines.append("")
    lines.append(f"<i>{stats.get('timestamp', '')} UTC</i>")
    return "\n".join(lines)


def format_user_stats(identity: str, result) -> str:
    record = result.extra.get("user_record")
    if record is None:
        return f"🔎 user <code>{html.escape(identity_prefix(identity))}</code>: no record yet"
    return (
        "📊 <b>User limit</b>\n"
        f"user: <code>{html.escape(identity_prefix(identity))}</code>\n"
        f"state: <b>{result.state.value}</b>, {result.count}/{result.max_count} "
        f"({result.extra.get('usage_percentage', 0)}%)\n"
        f"<code>{html.escape(json.dumps(record, ensure_ascii=False, indent=2))}</code>"
    )


@router.message(Command("limitstats"))
async def cmd_limitstats(m: Message, controller: AdmissionController):
    if not _is_admin(m.from_user.id):
        await m.answer("Not allowed.")
        return
    stats = await controller.get_system_stats()
    await m.answer(format_system_stats(stats), parse_mode="HTML")


@router.message(Command("userlimit"))
async def cmd_userlimit(m: Message, command: CommandObject, controller: AdmissionController):
    if not _is_admin(m.from_user.id):
        await m.answer("Not allowed.")
        return
    target = _parse_target(command.args)
    if not target:
        await m.answer("Usage: /userlimit <identity>")
        return
    result = await controller.get_user_stats(target)
    await m.answer(format_user_stats(target, result), parse_mode="HTML")


@router.message(Command("resetuser"))
async def cmd_resetuser(m: Message, command: CommandObject, controller: AdmissionController):
    if not _is_admin(m.from_user.id):
        await m.answer("Not allowed.")
        return
    target = _parse_target(command.args)
    if not target:
        await m.answer("Usage: /resetuser <identity>")
        return
    ok = await controller.reset_user(target, OperatorBypass())
    log.info("admin %s reset user=%s ok=%s", m.from_user.id, identity_prefix(target), ok)
    if ok:
        await m.answer(f"🔄 Counters reset for <code>{html.escape(identity_prefix(target))}</code>.", parse_mode="HTML")
    else:
        await m.answer("Nothing to reset (unknown identity or storage error).")


@router.message(Command("bypasstoken"))
async def cmd_bypasstoken(m: Message, command: CommandObject):
    if not _is_admin(m.from_user.id):
        await m.answer("Not allowed.")
        return
    if not settings.admin_secret:
        await m.answer("ADMIN_SECRET is not configured.")
        return
    target = _parse_target(command.args)
    if not target:
        await m.answer("Usage: /bypasstoken <identity>")
        return
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    token = issue_bypass_token(target, settings.admin_secret, day)
    log.info("admin %s issued bypass token for user=%s", m.from_user.id, identity_prefix(target))
    await m.answer(
        f"🔑 Bypass token for <code>{html.escape(identity_prefix(target))}</code>, valid on {day} (UTC):\n"
        f"<code>{token}</code>",
        parse_mode="HTML",
    )
