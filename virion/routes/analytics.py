from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.schemas import AnalyticsReportSchema
from virion.services.analytics import get_influencer_analytics
from virion.services.database import get_db

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get(
    "/influencer/{influencer_id}",
    response_model=AnalyticsReportSchema,
    response_model_by_alias=True,
    summary="Analytics across every link an influencer owns",
)
async def influencer_analytics(
    influencer_id: str = Path(...),
    days: int = Query(default=7),
    db: AsyncSession = Depends(get_db),
):
    report = await get_influencer_analytics(db, influencer_id, days)
    return AnalyticsReportSchema.model_validate(report)
