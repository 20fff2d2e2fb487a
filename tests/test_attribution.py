import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from virion.models.database import AnalyticsEvent, Referral, ReferralLink, utcnow
import virion.services.attribution as attribution
from virion.services.attribution import (
    RequestContext,
    parse_user_agent,
    record_conversion,
    record_signup,
    resolve_and_record_click,
)
from virion.services.errors import (
    DuplicateError,
    ExpiredError,
    InactiveError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from virion.services.links import create_link

CHROME_DESKTOP = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.mark.parametrize(
    "user_agent, expected",
    [
        (CHROME_DESKTOP, ("desktop", "Chrome")),
        (SAFARI_IPHONE, ("mobile", "Safari")),
        ("Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0", ("desktop", "Firefox")),
        ("curl/8.4.0", ("desktop", "Other")),
        ("", ("desktop", "Other")),
        (None, ("desktop", "Other")),
    ],
)
def test_parse_user_agent(user_agent, expected) -> None:
    assert parse_user_agent(user_agent) == expected


async def _link(db, influencer, **overrides) -> ReferralLink:
    fields = {
        "influencer_id": influencer.id,
        "title": "Summer Launch",
        "platform": "YouTube",
        "original_url": "https://shop.example.com/landing",
    }
    fields.update(overrides)
    return await create_link(db, **fields)


async def _events(db, link_id, event_type):
    result = await db.execute(
        select(AnalyticsEvent).where(
            AnalyticsEvent.link_id == link_id, AnalyticsEvent.event_type == event_type
        )
    )
    return list(result.scalars().all())


async def _counters(db, link_id):
    row = (
        await db.execute(
            select(ReferralLink.clicks, ReferralLink.conversions, ReferralLink.earnings).where(
                ReferralLink.id == link_id
            )
        )
    ).one()
    return row.clicks, row.conversions, Decimal(str(row.earnings))


@pytest.mark.asyncio
async def test_click_returns_destination_and_records_event(db_session, influencer):
    link = await _link(db_session, influencer)
    context = RequestContext(
        user_agent=SAFARI_IPHONE,
        referrer="https://www.instagram.com/p/abc",
        ip_address="203.0.113.9",
        url=f"http://testserver/api/referral/{link.referral_code}",
    )

    destination = await resolve_and_record_click(db_session, link.referral_code, context)

    assert destination == "https://shop.example.com/landing"
    clicks, conversions, _ = await _counters(db_session, link.id)
    assert (clicks, conversions) == (1, 0)
    events = await _events(db_session, link.id, "click")
    assert len(events) == 1
    assert events[0].device_type == "mobile"
    assert events[0].browser == "Safari"
    assert events[0].ip_address == "203.0.113.9"
    assert events[0].metadata_json["url"] == context.url


@pytest.mark.asyncio
async def test_click_on_unknown_code(db_session):
    with pytest.raises(NotFoundError):
        await resolve_and_record_click(db_session, "nope-000000", RequestContext())


@pytest.mark.asyncio
async def test_click_on_inactive_link_is_not_found(db_session, influencer):
    link = await _link(db_session, influencer, is_active=False)
    with pytest.raises(NotFoundError):
        await resolve_and_record_click(db_session, link.referral_code, RequestContext())
    assert await _events(db_session, link.id, "click") == []


@pytest.mark.asyncio
async def test_expired_link_records_nothing(db_session, influencer):
    link = await _link(db_session, influencer, expires_at=utcnow() - timedelta(days=1))

    with pytest.raises(ExpiredError):
        await resolve_and_record_click(db_session, link.referral_code, RequestContext())
    with pytest.raises(ExpiredError):
        await record_conversion(db_session, link.referral_code, 10)
    with pytest.raises(ExpiredError):
        await record_signup(db_session, link.referral_code, "Late Visitor", "late@example.com")

    assert await _counters(db_session, link.id) == (0, 0, Decimal("0"))
    assert await db_session.scalar(select(func.count()).select_from(AnalyticsEvent)) == 0


@pytest.mark.asyncio
async def test_conversions_accumulate_earnings(db_session, influencer):
    link = await _link(db_session, influencer)

    first = await record_conversion(db_session, link.referral_code, 9.99, {"order_id": "A-1"})
    second = await record_conversion(db_session, link.referral_code, "9.99")

    assert first.conversions == 1
    assert second.conversions == 2
    assert second.earnings == Decimal("19.98")
    assert second.conversion_value == Decimal("9.99")

    events = await _events(db_session, link.id, "conversion")
    assert len(events) == 2
    assert {event.metadata_json.get("order_id") for event in events} == {"A-1", None}


@pytest.mark.asyncio
async def test_conversion_defaults_value_to_zero(db_session, influencer):
    link = await _link(db_session, influencer)
    result = await record_conversion(db_session, link.referral_code)
    assert result.conversion_value == Decimal("0")
    assert result.conversions == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [-1, "abc", True, float("nan")])
async def test_conversion_rejects_bad_values(db_session, influencer, value):
    link = await _link(db_session, influencer)
    with pytest.raises(ValidationError):
        await record_conversion(db_session, link.referral_code, value)


@pytest.mark.asyncio
async def test_conversion_requires_code(db_session):
    with pytest.raises(ValidationError):
        await record_conversion(db_session, "", 5)


@pytest.mark.asyncio
async def test_signup_creates_pending_referral(db_session, influencer):
    link = await _link(db_session, influencer, platform="TikTok")

    referral = await record_signup(
        db_session,
        link.referral_code,
        "Jordan Fan",
        "jordan@example.com",
        discord_id="12345",
        age=24,
        user_agent=CHROME_DESKTOP,
        ip_address="198.51.100.4",
    )

    assert referral.status == "pending"
    assert referral.influencer_id == influencer.id
    assert referral.referral_link_id == link.id
    assert referral.source_platform == "TikTok"
    assert referral.metadata_json["signup_source"] == "api"
    _, conversions, earnings = await _counters(db_session, link.id)
    assert conversions == 1
    assert earnings == Decimal("0")
    events = await _events(db_session, link.id, "conversion")
    assert events[0].metadata_json["referral_id"] == referral.id


@pytest.mark.asyncio
async def test_duplicate_signup_is_rejected_per_influencer(db_session, influencer):
    link = await _link(db_session, influencer)
    await record_signup(db_session, link.referral_code, "Jordan", "jordan@example.com")

    with pytest.raises(DuplicateError):
        await record_signup(db_session, link.referral_code, "Jordan Again", "jordan@example.com")

    await record_signup(db_session, link.referral_code, "Riley", "riley@example.com")
    count = await db_session.scalar(
        select(func.count()).select_from(Referral).where(Referral.influencer_id == influencer.id)
    )
    assert count == 2
    _, conversions, _ = await _counters(db_session, link.id)
    assert conversions == 2


@pytest.mark.asyncio
async def test_signup_on_inactive_link(db_session, influencer):
    link = await _link(db_session, influencer, is_active=False)
    with pytest.raises(InactiveError):
        await record_signup(db_session, link.referral_code, "Jordan", "jordan@example.com")


@pytest.mark.asyncio
async def test_signup_validation(db_session, influencer):
    link = await _link(db_session, influencer)
    with pytest.raises(ValidationError):
        await record_signup(db_session, link.referral_code, "", "jordan@example.com")
    with pytest.raises(ValidationError):
        await record_signup(db_session, link.referral_code, "Jordan", "jordan@example.com", age=-3)
    with pytest.raises(NotFoundError):
        await record_signup(db_session, "unknown-code00", "Jordan", "jordan@example.com")


@pytest.mark.asyncio
async def test_concurrent_clicks_are_all_counted(session_factory, db_session, influencer):
    link = await _link(db_session, influencer)
    code = link.referral_code
    total = 20

    async def click() -> str:
        async with session_factory() as session:
            return await resolve_and_record_click(session, code, RequestContext(user_agent=CHROME_DESKTOP))

    destinations = await asyncio.gather(*(click() for _ in range(total)))

    assert set(destinations) == {"https://shop.example.com/landing"}
    async with session_factory() as session:
        clicks, _, _ = await _counters(session, link.id)
        assert clicks == total
        assert len(await _events(session, link.id, "click")) == total


def _locked() -> OperationalError:
    return OperationalError("UPDATE referral_links", {}, Exception("database is locked"))


def _break_counters(monkeypatch) -> None:
    async def broken(*_args, **_kwargs):
        raise _locked()

    monkeypatch.setattr(attribution, "increment_counters", broken)


def _break_commits(monkeypatch, db) -> None:
    async def broken():
        raise _locked()

    monkeypatch.setattr(db, "commit", broken)


@pytest.mark.asyncio
async def test_click_redirects_when_counter_update_fails(monkeypatch, db_session, influencer):
    link = await _link(db_session, influencer)
    _break_counters(monkeypatch)

    destination = await resolve_and_record_click(db_session, link.referral_code, RequestContext())

    assert destination == "https://shop.example.com/landing"
    assert len(await _events(db_session, link.id, "click")) == 1
    assert await _counters(db_session, link.id) == (0, 0, Decimal("0"))


@pytest.mark.asyncio
async def test_click_redirects_when_nothing_can_be_stored(monkeypatch, db_session, influencer):
    link = await _link(db_session, influencer)
    _break_commits(monkeypatch, db_session)

    destination = await resolve_and_record_click(db_session, link.referral_code, RequestContext())

    assert destination == "https://shop.example.com/landing"
    assert await _events(db_session, link.id, "click") == []
    assert await _counters(db_session, link.id) == (0, 0, Decimal("0"))


@pytest.mark.asyncio
async def test_conversion_counter_failure_is_a_storage_error(monkeypatch, db_session, influencer):
    link = await _link(db_session, influencer)
    _break_counters(monkeypatch)

    with pytest.raises(StorageError, match="Failed to update link statistics"):
        await record_conversion(db_session, link.referral_code, 12.5)
    assert len(await _events(db_session, link.id, "conversion")) == 1
    assert await _counters(db_session, link.id) == (0, 0, Decimal("0"))


@pytest.mark.asyncio
async def test_conversion_event_failure_is_a_storage_error(monkeypatch, db_session, influencer):
    link = await _link(db_session, influencer)
    _break_commits(monkeypatch, db_session)

    with pytest.raises(StorageError, match="Failed to record conversion"):
        await record_conversion(db_session, link.referral_code, 12.5)
    assert await _events(db_session, link.id, "conversion") == []


@pytest.mark.asyncio
async def test_signup_counter_failure_is_a_storage_error(monkeypatch, db_session, influencer):
    link = await _link(db_session, influencer)
    _break_counters(monkeypatch)

    with pytest.raises(StorageError, match="Failed to record signup conversion"):
        await record_signup(db_session, link.referral_code, "Jordan", "jordan@example.com")
    referrals = (await db_session.execute(select(Referral))).scalars().all()
    assert [referral.email for referral in referrals] == ["jordan@example.com"]
    assert await _counters(db_session, link.id) == (0, 0, Decimal("0"))


@pytest.mark.asyncio
async def test_signup_storage_failure(monkeypatch, db_session, influencer):
    link = await _link(db_session, influencer)
    _break_commits(monkeypatch, db_session)

    with pytest.raises(StorageError, match="Failed to create referral"):
        await record_signup(db_session, link.referral_code, "Jordan", "jordan@example.com")
    assert await db_session.scalar(select(func.count()).select_from(Referral)) == 0
