"""Attribution of referral clicks, conversions and signups to their links.

Each inbound request resolves its referral code to a link, appends one
analytics event and bumps the link's running counters. The event append and
the counter update are separate commits.

The browser-facing click path never raises past link resolution: storage
failures while recording are logged and swallowed so the visitor still
reaches the destination. Conversions and signups come from backend
integrations and surface every failure as a typed error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.database import AnalyticsEvent, Referral, ReferralLink, utcnow
from virion.services.errors import (
    DuplicateError,
    ExpiredError,
    InactiveError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from virion.services.links import increment_counters

logger = logging.getLogger(__name__)

# Evaluated top to bottom, first substring match wins. Order matters:
# Chrome user agents also carry "Safari".
DEVICE_RULES: tuple[tuple[str, str], ...] = (("Mobile", "mobile"),)
DEFAULT_DEVICE = "desktop"
BROWSER_RULES: tuple[tuple[str, str], ...] = (
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
    ("Edge", "Edge"),
    ("Opera", "Opera"),
)
DEFAULT_BROWSER = "Other"


@dataclass
class RequestContext:
    user_agent: str = ""
    referrer: str = ""
    ip_address: str = "unknown"
    url: Optional[str] = None


@dataclass
class ConversionResult:
    link_id: str
    conversions: int
    earnings: Decimal
    conversion_value: Decimal


def _first_match(value: str, rules: tuple[tuple[str, str], ...], default: str) -> str:
    for token, label in rules:
        if token in value:
            return label
    return default


def parse_user_agent(user_agent: Optional[str]) -> tuple[str, str]:
    """Return ``(device_type, browser)`` for a raw user-agent string."""
    ua = user_agent or ""
    return (
        _first_match(ua, DEVICE_RULES, DEFAULT_DEVICE),
        _first_match(ua, BROWSER_RULES, DEFAULT_BROWSER),
    )


def _parse_conversion_value(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        raise ValidationError("conversion_value must be a number")
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("conversion_value must be a number") from exc
    if not parsed.is_finite() or parsed < 0:
        raise ValidationError("conversion_value must be a non-negative number")
    return parsed.quantize(Decimal("0.01"))


async def _find_link(db: AsyncSession, code: str, *, active_only: bool) -> Optional[ReferralLink]:
    query = select(ReferralLink).where(ReferralLink.referral_code == code)
    if active_only:
        query = query.where(ReferralLink.is_active.is_(True))
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        raise StorageError("Failed to look up referral link") from exc
    return result.scalar_one_or_none()


async def _resolve_active_link(db: AsyncSession, code: str) -> ReferralLink:
    link = await _find_link(db, code, active_only=True)
    if link is None:
        raise NotFoundError("Referral link not found or inactive")
    if link.is_expired():
        raise ExpiredError()
    return link


def _build_event(
    link: ReferralLink,
    event_type: str,
    context: RequestContext,
    *,
    conversion_value: Decimal = Decimal("0"),
    metadata: Optional[dict] = None,
) -> AnalyticsEvent:
    device_type, browser = parse_user_agent(context.user_agent)
    return AnalyticsEvent(
        link_id=link.id,
        event_type=event_type,
        user_agent=context.user_agent,
        ip_address=context.ip_address,
        referrer=context.referrer,
        device_type=device_type,
        browser=browser,
        conversion_value=conversion_value,
        metadata_json=metadata or {},
    )


async def resolve_and_record_click(db: AsyncSession, code: str, context: RequestContext) -> str:
    """Record a click on ``code`` and return the URL to redirect to.

    Raises NotFoundError / ExpiredError when the link cannot be used. Failing
    to write the event or the counter is logged, not raised.
    """
    link = await _resolve_active_link(db, code)
    link_id, destination = link.id, link.original_url

    event = _build_event(
        link,
        "click",
        context,
        metadata={"timestamp": utcnow().isoformat(), "url": context.url},
    )
    try:
        db.add(event)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to record click analytics for link %s", link_id)

    try:
        await increment_counters(db, link_id, clicks=1)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to update click count for link %s", link_id)

    return destination


async def record_conversion(
    db: AsyncSession,
    code: Optional[str],
    conversion_value: Any = 0,
    metadata: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> ConversionResult:
    if not code:
        raise ValidationError("Referral code is required")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    value = _parse_conversion_value(conversion_value)
    context = context or RequestContext()

    link = await _resolve_active_link(db, code)
    link_id = link.id

    event = _build_event(
        link,
        "conversion",
        context,
        conversion_value=value,
        metadata={**(metadata or {}), "timestamp": utcnow().isoformat(), "url": context.url},
    )
    try:
        db.add(event)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to record conversion analytics for link %s", link_id)
        raise StorageError("Failed to record conversion") from exc

    try:
        _, conversions, earnings = await increment_counters(
            db, link_id, conversions=1, earnings=value
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to update conversion count for link %s", link_id)
        raise StorageError("Failed to update link statistics") from exc

    logger.info("Conversion recorded for link %s (value=%s)", link_id, value)
    return ConversionResult(
        link_id=link_id,
        conversions=conversions,
        earnings=earnings,
        conversion_value=value,
    )


async def record_signup(
    db: AsyncSession,
    code: Optional[str],
    name: Optional[str],
    email: Optional[str],
    discord_id: Optional[str] = None,
    age: Optional[int] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    referrer: Optional[str] = None,
) -> Referral:
    if not code or not name or not email:
        raise ValidationError("Missing required fields: referral_code, name, email")
    if age is not None and age < 0:
        raise ValidationError("age must be a non-negative integer")
    email = email.strip()

    link = await _find_link(db, code, active_only=False)
    if link is None:
        raise NotFoundError("Invalid referral code")
    if not link.is_active:
        raise InactiveError()
    if link.is_expired():
        raise ExpiredError()
    link_id, influencer_id = link.id, link.influencer_id

    try:
        existing = await db.scalar(
            select(Referral.id).where(
                Referral.influencer_id == influencer_id,
                Referral.email == email,
            )
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to check existing referrals") from exc
    if existing is not None:
        raise DuplicateError("Email already registered for this influencer")

    referral = Referral(
        influencer_id=influencer_id,
        referral_link_id=link_id,
        name=name,
        email=email,
        discord_id=discord_id,
        age=age,
        status="pending",
        source_platform=link.platform,
        conversion_value=Decimal("0"),
        metadata_json={
            "signup_source": "api",
            "user_agent": user_agent,
            "ip_address": ip_address,
            "signup_timestamp": utcnow().isoformat(),
        },
    )
    try:
        db.add(referral)
        await db.commit()
        await db.refresh(referral)
    except IntegrityError as exc:
        # Lost a race with a concurrent signup for the same email.
        await db.rollback()
        raise DuplicateError("Email already registered for this influencer") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to create referral for link %s", link_id)
        raise StorageError("Failed to create referral") from exc

    device_type, browser = parse_user_agent(user_agent)
    event = AnalyticsEvent(
        link_id=link_id,
        event_type="conversion",
        user_agent=user_agent,
        ip_address=ip_address,
        referrer=referrer,
        device_type=device_type,
        browser=browser,
        conversion_value=Decimal("0"),
        metadata_json={"event": "signup", "referral_id": referral.id, "email": email},
    )
    try:
        db.add(event)
        await db.commit()
        await increment_counters(db, link_id, conversions=1)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to record signup analytics for link %s", link_id)
        raise StorageError("Failed to record signup conversion") from exc

    logger.info("Referral signup %s recorded for link %s", referral.id, link_id)
    return referral
