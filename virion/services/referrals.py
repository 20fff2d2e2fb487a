from __future__ import annotations

from collections import Counter
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from virion.models.database import REFERRAL_STATUSES, Referral, as_utc
from virion.services.errors import NotFoundError, StorageError, ValidationError


def _to_float(value: Optional[Decimal | float | int]) -> float:
    if value is None:
        return 0.0
    return float(value)


def referral_to_payload(row: Referral) -> dict:
    link = row.referral_link
    return {
        "id": row.id,
        "influencer_id": row.influencer_id,
        "referral_link_id": row.referral_link_id,
        "name": row.name,
        "email": row.email,
        "discord_id": row.discord_id,
        "age": row.age,
        "status": row.status,
        "source_platform": row.source_platform,
        "conversion_value": _to_float(row.conversion_value),
        "metadata": row.metadata_json or {},
        "created_at": as_utc(row.created_at),
        "updated_at": as_utc(row.updated_at),
        "referral_link": (
            {
                "id": link.id,
                "title": link.title,
                "platform": link.platform,
                "referral_code": link.referral_code,
            }
            if link is not None
            else None
        ),
    }


async def _get_referral(db: AsyncSession, referral_id: str) -> Referral:
    try:
        result = await db.execute(
            select(Referral)
            .options(selectinload(Referral.referral_link))
            .where(Referral.id == referral_id)
            .execution_options(populate_existing=True)
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to load referral") from exc
    referral = result.scalar_one_or_none()
    if referral is None:
        raise NotFoundError("Referral not found")
    return referral


async def list_by_influencer(db: AsyncSession, influencer_id: str) -> list[Referral]:
    try:
        result = await db.execute(
            select(Referral)
            .options(selectinload(Referral.referral_link))
            .where(Referral.influencer_id == influencer_id)
            .order_by(Referral.created_at.desc())
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to list referrals") from exc
    return list(result.scalars().all())


async def update_status(db: AsyncSession, referral_id: str, status: Optional[str]) -> Referral:
    # Any status may move to any other; only the value itself is checked.
    if status not in REFERRAL_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(REFERRAL_STATUSES)}")

    referral = await _get_referral(db, referral_id)
    referral.status = status
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to update referral status") from exc
    return await _get_referral(db, referral_id)


async def delete_referral(db: AsyncSession, referral_id: str) -> None:
    try:
        result = await db.execute(delete(Referral).where(Referral.id == referral_id))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to delete referral") from exc
    if not result.rowcount:
        raise NotFoundError("Referral not found")


def summarize(referrals: list[Referral]) -> dict:
    total = len(referrals)
    by_status = {status: 0 for status in REFERRAL_STATUSES}
    for referral in referrals:
        by_status[referral.status] = by_status.get(referral.status, 0) + 1

    # Counter keeps first-seen order, and sorted() is stable, so ties go to
    # the platform that appeared first.
    platform_counts = Counter(referral.source_platform for referral in referrals)
    ranked = sorted(platform_counts.items(), key=lambda item: item[1], reverse=True)
    top_platform = ranked[0][0] if ranked else "N/A"

    ages = [referral.age for referral in referrals if referral.age]
    completed = by_status.get("completed", 0)

    return {
        "total": total,
        "by_status": by_status,
        "total_earnings": sum(_to_float(referral.conversion_value) for referral in referrals),
        "conversion_rate": (completed / total * 100) if total > 0 else 0.0,
        "top_platform": top_platform,
        "platform_counts": dict(platform_counts),
        "average_age": (sum(ages) / len(ages)) if ages else 0.0,
    }
