from decimal import Decimal

import pytest
from sqlalchemy import select

from virion.models.database import Bot, Client
from virion.services.bots import (
    bot_to_payload,
    compute_bot_stats,
    control_bot,
    create_bot,
    delete_bot,
    get_bot,
    list_bots,
    update_bot,
)
from virion.services.errors import NotFoundError, UnknownActionError, ValidationError


async def _client(db, status="Active") -> Client:
    client = Client(name="Acme Gaming", industry="Gaming", status=status)
    db.add(client)
    await db.commit()
    return client


async def _client_bot_count(db, client_id) -> int:
    return await db.scalar(select(Client.bots).where(Client.id == client_id))


@pytest.mark.asyncio
async def test_create_bot_starts_offline_and_counts_toward_client(db_session):
    client = await _client(db_session)

    bot = await create_bot(db_session, client_id=client.id, name="Helper", template="advanced")

    assert bot.status == "Offline"
    assert bot.template == "advanced"
    assert bot.prefix == "!"
    assert bot.client.name == "Acme Gaming"
    assert await _client_bot_count(db_session, client.id) == 1


@pytest.mark.asyncio
async def test_create_bot_validation(db_session):
    client = await _client(db_session)
    inactive = await _client(db_session, status="Inactive")

    with pytest.raises(ValidationError):
        await create_bot(db_session, client_id=client.id, name="", template="standard")
    with pytest.raises(ValidationError):
        await create_bot(db_session, client_id=client.id, name="Helper", template="premium")
    with pytest.raises(ValidationError, match="Invalid or inactive client"):
        await create_bot(db_session, client_id=inactive.id, name="Helper", template="standard")
    with pytest.raises(ValidationError, match="Invalid or inactive client"):
        await create_bot(db_session, client_id="missing", name="Helper", template="standard")


@pytest.mark.asyncio
async def test_stop_then_start(db_session):
    client = await _client(db_session)
    bot = await create_bot(db_session, client_id=client.id, name="Helper", template="standard")
    started = await control_bot(db_session, bot.id, "start")
    first_online = started.last_online

    stopped = await control_bot(db_session, bot.id, "stop")
    assert stopped.status == "Offline"
    assert stopped.last_online == first_online

    restarted = await control_bot(db_session, bot.id, "restart")
    assert restarted.status == "Online"
    assert restarted.last_online is not None
    assert restarted.last_online >= first_online


@pytest.mark.asyncio
async def test_unknown_action_leaves_bot_untouched(db_session):
    client = await _client(db_session)
    bot = await create_bot(db_session, client_id=client.id, name="Helper", template="standard")

    with pytest.raises(UnknownActionError):
        await control_bot(db_session, bot.id, "reboot")

    assert (await get_bot(db_session, bot.id)).status == "Offline"


@pytest.mark.asyncio
async def test_control_missing_bot(db_session):
    with pytest.raises(NotFoundError):
        await control_bot(db_session, "missing", "start")


@pytest.mark.asyncio
async def test_update_bot_ignores_read_only_fields(db_session):
    client = await _client(db_session)
    bot = await create_bot(db_session, client_id=client.id, name="Helper", template="standard")

    updated = await update_bot(
        db_session,
        bot.id,
        {"name": "Renamed", "servers": 12, "id": "other-id", "client_id": "other-client"},
    )

    assert updated.id == bot.id
    assert updated.client_id == client.id
    assert updated.name == "Renamed"
    assert updated.servers == 12


@pytest.mark.asyncio
async def test_update_bot_rejects_bad_values(db_session):
    client = await _client(db_session)
    bot = await create_bot(db_session, client_id=client.id, name="Helper", template="standard")

    with pytest.raises(ValidationError):
        await update_bot(db_session, bot.id, {"status": "Sleeping"})
    with pytest.raises(ValidationError):
        await update_bot(db_session, bot.id, {"discord_token": "secret"})
    with pytest.raises(ValidationError, match="Fields cannot be empty: name, servers"):
        await update_bot(db_session, bot.id, {"name": "", "servers": None, "prefix": None})


@pytest.mark.asyncio
async def test_delete_bot_decrements_client(db_session):
    client = await _client(db_session)
    first = await create_bot(db_session, client_id=client.id, name="One", template="standard")
    await create_bot(db_session, client_id=client.id, name="Two", template="custom")
    assert await _client_bot_count(db_session, client.id) == 2

    await delete_bot(db_session, first.id)

    assert await _client_bot_count(db_session, client.id) == 1
    assert [bot.name for bot in await list_bots(db_session, client.id)] == ["Two"]
    with pytest.raises(NotFoundError):
        await delete_bot(db_session, first.id)


@pytest.mark.asyncio
async def test_payload_nests_client(db_session):
    client = await _client(db_session)
    bot = await create_bot(db_session, client_id=client.id, name="Helper", template="standard")
    payload = bot_to_payload(bot)
    assert payload["client"] == {"id": client.id, "name": "Acme Gaming", "industry": "Gaming"}
    assert payload["created_at"].tzinfo is not None


def test_compute_bot_stats() -> None:
    bots = [
        Bot(status="Online", servers=4, users=100, commands_used=10, uptime_percentage=Decimal("99")),
        Bot(status="Offline", servers=0, users=0, commands_used=0, uptime_percentage=Decimal("50")),
    ]
    stats = compute_bot_stats(bots)
    assert stats["totalBots"] == 2
    assert stats["onlineBots"] == 1
    assert stats["totalServers"] == 4
    assert stats["avgUptime"] == pytest.approx(74.5)
    assert stats["onlinePercentage"] == pytest.approx(50.0)
    assert stats["avgUsersPerBot"] == pytest.approx(50.0)


def test_compute_bot_stats_empty() -> None:
    stats = compute_bot_stats([])
    assert stats["totalBots"] == 0
    assert stats["avgUptime"] == 0
    assert stats["onlinePercentage"] == 0
