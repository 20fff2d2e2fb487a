"""Click/conversion analytics over the append-only event log."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional
from urllib.parse import urlsplit

import pandas as pd
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.database import AnalyticsEvent, ReferralLink, UserProfile, as_utc, utcnow
from virion.services.errors import NotFoundError, StorageError, ValidationError
from virion.services.links import get_link

logger = logging.getLogger(__name__)

ALLOWED_WINDOWS = (7, 30, 90)
TOP_REFERRERS = 5
RECENT_ACTIVITY = 10
EVENT_COLUMNS = [
    "id",
    "event_type",
    "device_type",
    "browser",
    "referrer",
    "conversion_value",
    "created_at",
]


def referrer_domain(referrer: Optional[str]) -> str:
    if not isinstance(referrer, str) or not referrer:
        return "Direct"
    if "://" in referrer:
        try:
            return urlsplit(referrer).hostname or referrer
        except ValueError:
            return referrer
    return referrer


def _event_record(event) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "device_type": event.device_type,
        "browser": event.browser,
        "referrer": event.referrer,
        "conversion_value": float(event.conversion_value or 0),
        "created_at": as_utc(event.created_at),
    }


def _event_to_payload(event) -> dict:
    return {
        "id": event.id,
        "link_id": event.link_id,
        "event_type": event.event_type,
        "device_type": event.device_type,
        "browser": event.browser,
        "referrer": event.referrer,
        "country": getattr(event, "country", None),
        "conversion_value": float(event.conversion_value or 0),
        "metadata": getattr(event, "metadata_json", None) or {},
        "created_at": as_utc(event.created_at),
    }


def _breakdown(values: pd.Series, *, capitalize: bool = False) -> list[dict]:
    """Counts per distinct value, in order of first appearance."""
    if values.empty:
        return []
    cleaned = values.fillna("Unknown").replace("", "Unknown")
    counts = cleaned.value_counts()
    entries = []
    for name in pd.unique(cleaned):
        label = name[:1].upper() + name[1:] if capitalize else name
        entries.append({"name": label, "count": int(counts[name])})
    return entries


def _top_referrers(clicks: pd.DataFrame) -> list[dict]:
    if clicks.empty:
        return []
    domains = clicks["referrer"].map(referrer_domain)
    counts = domains.value_counts()
    ordered = [(name, int(counts[name])) for name in pd.unique(domains)]
    ordered.sort(key=lambda item: item[1], reverse=True)
    return [{"referrer": name, "clicks": count} for name, count in ordered[:TOP_REFERRERS]]


def _daily_series(
    clicks: pd.DataFrame, conversions: pd.DataFrame, window_days: int, now: datetime
) -> list[dict]:
    today = as_utc(now).date()
    click_days = clicks["created_at"].map(lambda ts: ts.date()).value_counts()
    conversion_days = conversions["created_at"].map(lambda ts: ts.date()).value_counts()

    series = []
    for offset in range(window_days - 1, -1, -1):
        day = today - timedelta(days=offset)
        series.append(
            {
                "date": day.strftime("%b %d"),
                "day": day.isoformat(),
                "clicks": int(click_days.get(day, 0)),
                "conversions": int(conversion_days.get(day, 0)),
            }
        )
    return series


def compute_report(events: Iterable, window_days: int, now: Optional[datetime] = None) -> dict:
    """Derive totals, breakdowns and a per-day series from raw event rows.

    Day buckets are UTC calendar days, oldest first, ending with the day of
    ``now``. Device and browser breakdowns only consider clicks.
    """
    now = now or utcnow()
    events = list(events)
    frame = pd.DataFrame.from_records(
        [_event_record(event) for event in events], columns=EVENT_COLUMNS
    )
    clicks = frame[frame["event_type"] == "click"]
    conversions = frame[frame["event_type"] == "conversion"]

    total_clicks = int(len(clicks))
    total_conversions = int(len(conversions))
    total_earnings = float(conversions["conversion_value"].sum()) if total_conversions else 0.0

    recent = sorted(events, key=lambda event: as_utc(event.created_at), reverse=True)

    return {
        "window_days": window_days,
        "total_clicks": total_clicks,
        "total_conversions": total_conversions,
        "conversion_rate": (total_conversions / total_clicks * 100) if total_clicks > 0 else 0.0,
        "total_earnings": round(total_earnings, 2),
        "clicks_by_day": _daily_series(clicks, conversions, window_days, now),
        "device_breakdown": _breakdown(clicks["device_type"], capitalize=True),
        "browser_breakdown": _breakdown(clicks["browser"]),
        "top_referrers": _top_referrers(clicks),
        "recent_activity": [_event_to_payload(event) for event in recent[:RECENT_ACTIVITY]],
    }


def _check_window(window_days: int) -> None:
    if window_days not in ALLOWED_WINDOWS:
        raise ValidationError(
            f"Invalid window. Must be one of: {', '.join(str(days) for days in ALLOWED_WINDOWS)}"
        )


async def _fetch_events(
    db: AsyncSession, link_ids: list[str], since: datetime, until: datetime
) -> list[AnalyticsEvent]:
    if not link_ids:
        return []
    try:
        result = await db.execute(
            select(AnalyticsEvent)
            .where(
                AnalyticsEvent.link_id.in_(link_ids),
                AnalyticsEvent.created_at >= since,
                AnalyticsEvent.created_at <= until,
            )
            .order_by(AnalyticsEvent.created_at.desc())
        )
    except SQLAlchemyError as exc:
        logger.error("Failed to fetch analytics events: %s", exc)
        raise StorageError("Failed to fetch analytics") from exc
    return list(result.scalars().all())


async def get_link_analytics(
    db: AsyncSession,
    link_id: str,
    window_days: int = 7,
    now: Optional[datetime] = None,
) -> dict:
    _check_window(window_days)
    now = now or utcnow()
    link = await get_link(db, link_id)

    events = await _fetch_events(db, [link.id], now - timedelta(days=window_days), now)
    report = compute_report(events, window_days, now)
    report.update({"scope": "link", "scope_id": link.id})
    return report


async def get_influencer_analytics(
    db: AsyncSession,
    influencer_id: str,
    window_days: int = 7,
    now: Optional[datetime] = None,
) -> dict:
    _check_window(window_days)
    now = now or utcnow()
    try:
        influencer = await db.get(UserProfile, influencer_id)
        link_ids = list(
            (
                await db.execute(
                    select(ReferralLink.id).where(ReferralLink.influencer_id == influencer_id)
                )
            )
            .scalars()
            .all()
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to load influencer links") from exc
    if influencer is None:
        raise NotFoundError("Influencer not found")

    events = await _fetch_events(db, link_ids, now - timedelta(days=window_days), now)
    report = compute_report(events, window_days, now)
    report.update({"scope": "influencer", "scope_id": influencer_id})
    return report
