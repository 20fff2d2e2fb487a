"""Bot records and the start/stop/restart status flag.

Nothing here talks to Discord: control actions only flip the stored status,
and creation stores the record without provisioning an application.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from virion.models.database import BOT_STATUSES, BOT_TEMPLATES, Bot, Client, as_utc, utcnow
from virion.services.errors import NotFoundError, StorageError, UnknownActionError, ValidationError

logger = logging.getLogger(__name__)

CONTROL_ACTIONS = ("start", "stop", "restart")
CONTROL_MESSAGES = {
    "start": "Bot started successfully",
    "stop": "Bot stopped successfully",
    "restart": "Bot restarted successfully",
}
READ_ONLY_FIELDS = frozenset(
    {"id", "client_id", "discord_bot_id", "created_at", "updated_at", "deployment_id", "server_endpoint"}
)
REQUIRED_FIELDS = frozenset(
    {"name", "status", "template", "auto_deploy", "servers", "users", "commands_used", "uptime_percentage"}
)
EDITABLE_FIELDS = frozenset(
    {
        "name",
        "status",
        "template",
        "prefix",
        "description",
        "auto_deploy",
        "servers",
        "users",
        "commands_used",
        "uptime_percentage",
        "avatar_url",
        "invite_url",
        "webhook_url",
    }
)


def _to_float(value) -> float:
    if value is None:
        return 0.0
    return float(value)


def bot_to_payload(bot: Bot) -> dict:
    client = bot.client
    return {
        "id": bot.id,
        "client_id": bot.client_id,
        "name": bot.name,
        "discord_bot_id": bot.discord_bot_id,
        "status": bot.status,
        "template": bot.template,
        "prefix": bot.prefix,
        "description": bot.description,
        "auto_deploy": bool(bot.auto_deploy),
        "servers": bot.servers or 0,
        "users": bot.users or 0,
        "commands_used": bot.commands_used or 0,
        "uptime_percentage": _to_float(bot.uptime_percentage),
        "last_online": as_utc(bot.last_online),
        "avatar_url": bot.avatar_url,
        "invite_url": bot.invite_url,
        "webhook_url": bot.webhook_url,
        "created_at": as_utc(bot.created_at),
        "updated_at": as_utc(bot.updated_at),
        "client": (
            {"id": client.id, "name": client.name, "industry": client.industry}
            if client is not None
            else None
        ),
    }


async def get_bot(db: AsyncSession, bot_id: str) -> Bot:
    try:
        result = await db.execute(
            select(Bot)
            .options(selectinload(Bot.client))
            .where(Bot.id == bot_id)
            .execution_options(populate_existing=True)
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to load bot") from exc
    bot = result.scalar_one_or_none()
    if bot is None:
        raise NotFoundError("Bot not found")
    return bot


async def list_bots(db: AsyncSession, client_id: Optional[str] = None) -> list[Bot]:
    query = select(Bot).options(selectinload(Bot.client)).order_by(Bot.created_at.desc())
    if client_id:
        query = query.where(Bot.client_id == client_id)
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to list bots") from exc
    return list(result.scalars().all())


async def control_bot(db: AsyncSession, bot_id: str, action: Optional[str]) -> Bot:
    """Apply a start/stop/restart action to the stored status.

    start and restart mark the bot Online and stamp ``last_online``; stop
    marks it Offline and keeps the previous ``last_online``.
    """
    if action not in CONTROL_ACTIONS:
        raise UnknownActionError()

    bot = await get_bot(db, bot_id)
    if action == "stop":
        bot.status = "Offline"
    else:
        bot.status = "Online"
        bot.last_online = utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to update bot status") from exc

    logger.info("Bot %s -> %s (%s)", bot_id, bot.status, action)
    return await get_bot(db, bot_id)


async def update_bot(db: AsyncSession, bot_id: str, patch: dict) -> Bot:
    updates = {key: value for key, value in patch.items() if key not in READ_ONLY_FIELDS}
    unknown = set(updates) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    cleared = sorted(key for key in updates.keys() & REQUIRED_FIELDS if updates[key] in (None, ""))
    if cleared:
        raise ValidationError(f"Fields cannot be empty: {', '.join(cleared)}")
    if "status" in updates and updates["status"] not in BOT_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(BOT_STATUSES)}")
    if "template" in updates and updates["template"] not in BOT_TEMPLATES:
        raise ValidationError(f"Invalid template. Must be one of: {', '.join(BOT_TEMPLATES)}")

    bot = await get_bot(db, bot_id)
    for field, value in updates.items():
        setattr(bot, field, value)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to update bot") from exc
    return await get_bot(db, bot_id)


async def create_bot(
    db: AsyncSession,
    *,
    client_id: Optional[str],
    name: Optional[str],
    template: Optional[str],
    prefix: str = "!",
    description: Optional[str] = None,
    auto_deploy: bool = False,
    avatar_url: Optional[str] = None,
    webhook_url: Optional[str] = None,
    discord_bot_id: Optional[str] = None,
) -> Bot:
    if not name or not client_id or not template:
        raise ValidationError("Missing required fields: name, client_id, template")
    if template not in BOT_TEMPLATES:
        raise ValidationError(f"Invalid template. Must be one of: {', '.join(BOT_TEMPLATES)}")

    try:
        client = await db.get(Client, client_id)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to load client") from exc
    if client is None or client.status != "Active":
        raise ValidationError("Invalid or inactive client")

    bot = Bot(
        client_id=client_id,
        name=name,
        template=template,
        prefix=prefix,
        description=description,
        auto_deploy=auto_deploy,
        avatar_url=avatar_url,
        webhook_url=webhook_url,
        discord_bot_id=discord_bot_id,
        status="Offline",
        servers=0,
        users=0,
        commands_used=0,
        uptime_percentage=Decimal("0"),
    )
    try:
        db.add(bot)
        await db.flush()
        await db.execute(
            update(Client)
            .where(Client.id == client_id)
            .values(bots=Client.bots + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to create bot") from exc

    logger.info("Created bot %s for client %s", bot.id, client_id)
    return await get_bot(db, bot.id)


async def delete_bot(db: AsyncSession, bot_id: str) -> None:
    bot = await get_bot(db, bot_id)
    client_id = bot.client_id
    try:
        await db.execute(delete(Bot).where(Bot.id == bot_id))
        client = await db.get(Client, client_id, populate_existing=True)
        if client is not None:
            client.bots = max(0, (client.bots or 1) - 1)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to delete bot") from exc
    logger.info("Deleted bot %s", bot_id)


def compute_bot_stats(bots: list[Bot]) -> dict:
    total = len(bots)
    online = sum(1 for bot in bots if bot.status == "Online")
    servers = sum(bot.servers or 0 for bot in bots)
    users = sum(bot.users or 0 for bot in bots)
    commands = sum(bot.commands_used or 0 for bot in bots)
    uptime = sum(_to_float(bot.uptime_percentage) for bot in bots)
    return {
        "totalBots": total,
        "onlineBots": online,
        "totalServers": servers,
        "totalUsers": users,
        "totalCommands": commands,
        "avgUptime": uptime / total if total > 0 else 0,
        "onlinePercentage": (online / total * 100) if total > 0 else 0,
        "avgServersPerBot": servers / total if total > 0 else 0,
        "avgUsersPerBot": users / total if total > 0 else 0,
    }
