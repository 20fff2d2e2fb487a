from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.schemas import (
    BotControlRequest,
    BotControlResponse,
    BotCreateRequest,
    BotListResponse,
    BotResponse,
    BotSchema,
    BotStatsResponse,
    BotStatsSchema,
    BotUpdateRequest,
    MessageResponse,
)
from virion.services.bots import (
    CONTROL_MESSAGES,
    bot_to_payload,
    compute_bot_stats,
    control_bot,
    create_bot,
    delete_bot,
    get_bot,
    list_bots,
    update_bot,
)
from virion.services.database import get_db

router = APIRouter(prefix="/bots", tags=["Bots"])


def _bot_schema(bot) -> BotSchema:
    return BotSchema.model_validate(bot_to_payload(bot))


@router.get("", response_model=BotListResponse, summary="List bots")
async def bots_list(
    client_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    bots = await list_bots(db, client_id)
    return BotListResponse(bots=[_bot_schema(bot) for bot in bots], total=len(bots))


@router.post(
    "",
    response_model=BotResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a bot record",
)
async def bots_create(payload: BotCreateRequest, db: AsyncSession = Depends(get_db)):
    bot = await create_bot(
        db,
        client_id=payload.client_id,
        name=payload.name,
        template=payload.template,
        prefix=payload.prefix,
        description=payload.description,
        auto_deploy=payload.auto_deploy,
        avatar_url=payload.avatar_url,
        webhook_url=payload.webhook_url,
        discord_bot_id=payload.discord_application_id,
    )
    return BotResponse(bot=_bot_schema(bot))


@router.get(
    "/stats",
    response_model=BotStatsResponse,
    response_model_by_alias=True,
    summary="Fleet-wide bot stats",
)
async def bots_stats(db: AsyncSession = Depends(get_db)):
    bots = await list_bots(db)
    return BotStatsResponse(stats=BotStatsSchema.model_validate(compute_bot_stats(bots)))


@router.get("/{bot_id}", response_model=BotResponse, summary="Get one bot")
async def bots_get(bot_id: str = Path(...), db: AsyncSession = Depends(get_db)):
    return BotResponse(bot=_bot_schema(await get_bot(db, bot_id)))


@router.put("/{bot_id}", response_model=BotResponse, summary="Update a bot")
async def bots_update(
    payload: BotUpdateRequest,
    bot_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    bot = await update_bot(db, bot_id, payload.model_dump(exclude_unset=True))
    return BotResponse(bot=_bot_schema(bot))


@router.delete("/{bot_id}", response_model=MessageResponse, summary="Delete a bot")
async def bots_delete(bot_id: str = Path(...), db: AsyncSession = Depends(get_db)):
    await delete_bot(db, bot_id)
    return MessageResponse(success=True, message="Bot deleted successfully")


@router.post(
    "/{bot_id}/control",
    response_model=BotControlResponse,
    summary="Start, stop or restart a bot",
)
async def bots_control(
    payload: BotControlRequest,
    bot_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    bot = await control_bot(db, bot_id, payload.action)
    return BotControlResponse(
        success=True,
        bot=_bot_schema(bot),
        action=payload.action,
        message=CONTROL_MESSAGES[payload.action],
    )
