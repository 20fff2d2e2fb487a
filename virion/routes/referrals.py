from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.schemas import (
    MessageResponse,
    ReferralListResponse,
    ReferralSchema,
    ReferralStatusRequest,
    ReferralSummarySchema,
)
from virion.services.database import get_db
from virion.services.referrals import (
    delete_referral,
    list_by_influencer,
    referral_to_payload,
    summarize,
    update_status,
)

router = APIRouter(prefix="/referrals", tags=["Referrals"])


@router.get("", response_model=ReferralListResponse, summary="List an influencer's referrals")
async def referrals_list(
    influencer_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    referrals = await list_by_influencer(db, influencer_id)
    return ReferralListResponse(
        referrals=[ReferralSchema.model_validate(referral_to_payload(row)) for row in referrals],
        total=len(referrals),
    )


@router.get("/summary", response_model=ReferralSummarySchema, summary="Referral totals")
async def referrals_summary(
    influencer_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    referrals = await list_by_influencer(db, influencer_id)
    return ReferralSummarySchema.model_validate(summarize(referrals))


@router.patch(
    "/{referral_id}/status",
    response_model=ReferralSchema,
    summary="Change a referral's status",
)
async def referrals_update_status(
    payload: ReferralStatusRequest,
    referral_id: str = Path(...),
    db: AsyncSession = Depends(get_db),
):
    referral = await update_status(db, referral_id, payload.status)
    return ReferralSchema.model_validate(referral_to_payload(referral))


@router.delete("/{referral_id}", response_model=MessageResponse, summary="Delete a referral")
async def referrals_delete(referral_id: str = Path(...), db: AsyncSession = Depends(get_db)):
    await delete_referral(db, referral_id)
    return MessageResponse(success=True, message="Referral deleted successfully")
