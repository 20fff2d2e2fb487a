"""Referral link registry: creation, editing and counter maintenance."""
from __future__ import annotations

import logging
import re
import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Optional
from urllib.parse import urlsplit

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from virion.config import settings
from virion.models.database import (
    PLATFORMS,
    AnalyticsEvent,
    ReferralLink,
    UserProfile,
    as_utc,
    utcnow,
)
from virion.services.errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

CODE_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
CODE_SUFFIX_LENGTH = 6
MAX_CODE_ATTEMPTS = 5
TITLE_MAX_LENGTH = 255
URL_MAX_LENGTH = 2000
DESCRIPTION_MAX_LENGTH = 2000
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "platform",
        "original_url",
        "thumbnail_url",
        "is_active",
        "expires_at",
    }
)


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", title.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or "link"


def generate_referral_code(title: str) -> str:
    suffix = "".join(secrets.choice(CODE_SUFFIX_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{slugify(title)}-{suffix}"


def generate_referral_url(code: str) -> str:
    return f"{settings.referral_base_url}/{code}"


def link_to_payload(link: ReferralLink) -> dict:
    return {
        "id": link.id,
        "influencer_id": link.influencer_id,
        "title": link.title,
        "description": link.description,
        "platform": link.platform,
        "original_url": link.original_url,
        "referral_code": link.referral_code,
        "referral_url": link.referral_url,
        "thumbnail_url": link.thumbnail_url,
        "clicks": link.clicks or 0,
        "conversions": link.conversions or 0,
        "earnings": float(link.earnings or 0),
        "conversion_rate": link.conversion_rate,
        "is_active": bool(link.is_active),
        "expires_at": as_utc(link.expires_at),
        "created_at": as_utc(link.created_at),
        "updated_at": as_utc(link.updated_at),
    }


def _validate_title(title: Optional[str]) -> str:
    if not title or not title.strip():
        raise ValidationError("Title is required")
    title = title.strip()
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters")
    return title


def _validate_description(description: Optional[str]) -> Optional[str]:
    if description is not None and len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters")
    return description


def _validate_platform(platform: Optional[str]) -> str:
    if platform not in PLATFORMS:
        raise ValidationError(f"Invalid platform. Must be one of: {', '.join(PLATFORMS)}")
    return platform


def _validate_url(url: Optional[str], field: str = "original_url") -> str:
    if not url or not url.strip():
        raise ValidationError(f"{field} is required")
    url = url.strip()
    if len(url) > URL_MAX_LENGTH:
        raise ValidationError(f"{field} must be at most {URL_MAX_LENGTH} characters")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(f"{field} must be an absolute http(s) URL")
    return url


async def _unused_code(db: AsyncSession, title: str) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_referral_code(title)
        taken = await db.scalar(select(ReferralLink.id).where(ReferralLink.referral_code == code))
        if taken is None:
            return code
    raise StorageError("Could not allocate a unique referral code")


async def create_link(
    db: AsyncSession,
    *,
    influencer_id: str,
    title: Optional[str],
    platform: Optional[str],
    original_url: Optional[str],
    description: Optional[str] = None,
    thumbnail_url: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    is_active: bool = True,
) -> ReferralLink:
    title = _validate_title(title)
    platform = _validate_platform(platform)
    original_url = _validate_url(original_url)
    description = _validate_description(description)
    if thumbnail_url:
        thumbnail_url = _validate_url(thumbnail_url, "thumbnail_url")

    try:
        influencer = await db.get(UserProfile, influencer_id)
        if influencer is None:
            raise NotFoundError("Influencer not found")

        code = await _unused_code(db, title)
        link = ReferralLink(
            influencer_id=influencer_id,
            title=title,
            description=description,
            platform=platform,
            original_url=original_url,
            referral_code=code,
            referral_url=generate_referral_url(code),
            thumbnail_url=thumbnail_url,
            clicks=0,
            conversions=0,
            earnings=Decimal("0"),
            is_active=is_active,
            expires_at=expires_at,
        )
        db.add(link)
        await db.commit()
        await db.refresh(link)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to create referral link") from exc

    logger.info("Created referral link %s (%s) for %s", link.id, link.referral_code, influencer_id)
    return link


async def get_link(db: AsyncSession, link_id: str) -> ReferralLink:
    try:
        link = await db.get(ReferralLink, link_id)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to load referral link") from exc
    if link is None:
        raise NotFoundError("Referral link not found")
    return link


async def list_links(db: AsyncSession, influencer_id: Optional[str] = None) -> list[ReferralLink]:
    query = select(ReferralLink).order_by(ReferralLink.created_at.desc())
    if influencer_id:
        query = query.where(ReferralLink.influencer_id == influencer_id)
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to list referral links") from exc
    return list(result.scalars().all())


async def update_link(db: AsyncSession, link_id: str, patch: dict) -> ReferralLink:
    unknown = set(patch) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    if "title" in patch:
        patch["title"] = _validate_title(patch["title"])
    if "platform" in patch:
        patch["platform"] = _validate_platform(patch["platform"])
    if "original_url" in patch:
        patch["original_url"] = _validate_url(patch["original_url"])
    if "description" in patch:
        patch["description"] = _validate_description(patch["description"])
    if patch.get("thumbnail_url"):
        patch["thumbnail_url"] = _validate_url(patch["thumbnail_url"], "thumbnail_url")
    if "is_active" in patch and patch["is_active"] is None:
        raise ValidationError("is_active cannot be null")

    link = await get_link(db, link_id)
    for field, value in patch.items():
        setattr(link, field, value)
    try:
        await db.commit()
        await db.refresh(link)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to update referral link") from exc
    return link


async def toggle_active(db: AsyncSession, link_id: str) -> ReferralLink:
    link = await get_link(db, link_id)
    return await update_link(db, link_id, {"is_active": not link.is_active})


async def delete_link(db: AsyncSession, link_id: str) -> None:
    try:
        result = await db.execute(delete(ReferralLink).where(ReferralLink.id == link_id))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to delete referral link") from exc
    if not result.rowcount:
        raise NotFoundError("Referral link not found")
    logger.info("Deleted referral link %s", link_id)


async def increment_counters(
    db: AsyncSession,
    link_id: str,
    *,
    clicks: int = 0,
    conversions: int = 0,
    earnings: Decimal = Decimal("0"),
) -> tuple[int, int, Decimal]:
    """Bump the running totals in one UPDATE and return the stored values.

    The arithmetic happens in the database, so concurrent callers never
    overwrite each other's increments. Does not commit.
    """
    await db.execute(
        update(ReferralLink)
        .where(ReferralLink.id == link_id)
        .values(
            clicks=ReferralLink.clicks + clicks,
            conversions=ReferralLink.conversions + conversions,
            earnings=ReferralLink.earnings + earnings,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    row = (
        await db.execute(
            select(ReferralLink.clicks, ReferralLink.conversions, ReferralLink.earnings).where(
                ReferralLink.id == link_id
            )
        )
    ).one()
    return int(row.clicks or 0), int(row.conversions or 0), Decimal(str(row.earnings or 0))


def summarize_links(links: list[ReferralLink]) -> dict:
    total_clicks = sum(link.clicks or 0 for link in links)
    total_conversions = sum(link.conversions or 0 for link in links)
    return {
        "total_links": len(links),
        "active_links": sum(1 for link in links if link.is_active),
        "total_clicks": total_clicks,
        "total_conversions": total_conversions,
        "total_earnings": float(sum(Decimal(str(link.earnings or 0)) for link in links)),
        "average_conversion_rate": (total_conversions / total_clicks * 100) if total_clicks > 0 else 0.0,
    }


async def reconcile_counters(db: AsyncSession, link_id: Optional[str] = None) -> list[dict]:
    """Rewrite link counters from the event log; returns the rows that changed."""
    is_click = AnalyticsEvent.event_type == "click"
    is_conversion = AnalyticsEvent.event_type == "conversion"
    totals_query = select(
        AnalyticsEvent.link_id,
        func.coalesce(func.sum(case((is_click, 1), else_=0)), 0).label("clicks"),
        func.coalesce(func.sum(case((is_conversion, 1), else_=0)), 0).label("conversions"),
        func.coalesce(
            func.sum(case((is_conversion, AnalyticsEvent.conversion_value), else_=0)), 0
        ).label("earnings"),
    ).group_by(AnalyticsEvent.link_id)
    links_query = select(ReferralLink)
    if link_id:
        totals_query = totals_query.where(AnalyticsEvent.link_id == link_id)
        links_query = links_query.where(ReferralLink.id == link_id)

    try:
        totals = {row.link_id: row for row in (await db.execute(totals_query)).all()}
        links = list((await db.execute(links_query)).scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError("Failed to read analytics for reconciliation") from exc

    if link_id and not links:
        raise NotFoundError("Referral link not found")

    corrected: list[dict] = []
    for link in links:
        row = totals.get(link.id)
        clicks = int(row.clicks) if row else 0
        conversions = int(row.conversions) if row else 0
        earnings = Decimal(str(row.earnings)).quantize(Decimal("0.01")) if row else Decimal("0.00")
        current_earnings = Decimal(str(link.earnings or 0)).quantize(Decimal("0.01"))
        if (link.clicks, link.conversions, current_earnings) == (clicks, conversions, earnings):
            continue
        corrected.append(
            {
                "link_id": link.id,
                "referral_code": link.referral_code,
                "before": {
                    "clicks": link.clicks,
                    "conversions": link.conversions,
                    "earnings": float(current_earnings),
                },
                "after": {"clicks": clicks, "conversions": conversions, "earnings": float(earnings)},
            }
        )
        link.clicks = clicks
        link.conversions = conversions
        link.earnings = earnings

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to write reconciled counters") from exc

    if corrected:
        logger.warning("Reconciled counters for %d referral link(s)", len(corrected))
    return corrected
