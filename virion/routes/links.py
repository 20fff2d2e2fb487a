from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.schemas import (
    AnalyticsReportSchema,
    LinkCreateRequest,
    LinkListResponse,
    LinkSchema,
    LinkSummarySchema,
    LinkUpdateRequest,
    MessageResponse,
)
from virion.services.analytics import get_link_analytics
from virion.services.database import get_db
from virion.services.links import (
    create_link,
    delete_link,
    get_link,
    link_to_payload,
    list_links,
    summarize_links,
    toggle_active,
    update_link,
)

router = APIRouter(prefix="/links", tags=["Links"])


@router.get("", response_model=LinkListResponse, summary="List referral links")
async def links_list(
    influencer_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    links = await list_links(db, influencer_id)
    return LinkListResponse(
        links=[LinkSchema.model_validate(link_to_payload(link)) for link in links],
        total=len(links),
    )


@router.post(
    "",
    response_model=LinkSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Create a referral link",
)
async def links_create(payload: LinkCreateRequest, db: AsyncSession = Depends(get_db)):
    link = await create_link(
        db,
        influencer_id=payload.influencer_id,
        title=payload.title,
        platform=payload.platform,
        original_url=payload.original_url,
        description=payload.description,
        thumbnail_url=payload.thumbnail_url,
        expires_at=payload.expires_at,
        is_active=payload.is_active,
    )
    return LinkSchema.model_validate(link_to_payload(link))


@router.get("/summary", response_model=LinkSummarySchema, summary="Totals across links")
async def links_summary(
    influencer_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    links = await list_links(db, influencer_id)
    return LinkSummarySchema.model_validate(summarize_links(links))


@router.get("/{link_id}", response_model=LinkSchema, summary="Get one referral link")
async def links_get(link_id: str = Path(...), db: AsyncSession = Depends(get_db)):
    link = await get_link(db, link_id)
    return LinkSchema.model_validate(link_to_payload(link))


@router.patch("/{link_id}", response_model=LinkSchema, summary="Update a referral link")
async def links_update(
    payload: LinkUpdateRequest,
    link_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    link = await update_link(db, link_id, payload.model_dump(exclude_unset=True))
    return LinkSchema.model_validate(link_to_payload(link))


@router.delete("/{link_id}", response_model=MessageResponse, summary="Delete a referral link")
async def links_delete(link_id: str = Path(...), db: AsyncSession = Depends(get_db)):
    await delete_link(db, link_id)
    return MessageResponse(success=True, message="Referral link deleted successfully")


@router.post(
    "/{link_id}/toggle",
    response_model=LinkSchema,
    summary="Flip a referral link between active and inactive",
)
async def links_toggle(link_id: str = Path(...), db: AsyncSession = Depends(get_db)):
    link = await toggle_active(db, link_id)
    return LinkSchema.model_validate(link_to_payload(link))


@router.get(
    "/{link_id}/analytics",
    response_model=AnalyticsReportSchema,
    response_model_by_alias=True,
    summary="Click and conversion analytics for one link",
)
async def links_analytics(
    link_id: str = Path(...),
    days: int = Query(default=7),
    db: AsyncSession = Depends(get_db),
):
    report = await get_link_analytics(db, link_id, days)
    return AnalyticsReportSchema.model_validate(report)
