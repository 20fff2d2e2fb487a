from datetime import timedelta
from functools import partial

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from virion.main import app
from virion.models.database import AnalyticsEvent, Client, ReferralLink, utcnow
from virion.routes.dashboard import get_dashboard_loader
from virion.services.dashboard import DashboardLoader, fetch_role_data
from virion.services.database import get_db
from virion.services.links import create_link


def _override_get_db(session):
    async def _override():
        yield session

    return _override


@pytest_asyncio.fixture()
async def api(db_session, session_factory):
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_dashboard_loader] = lambda: DashboardLoader(
        partial(fetch_role_data, session_factory),
        timeout_seconds=5,
        max_retries=0,
        backoff_seconds=0,
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def link(db_session, influencer) -> ReferralLink:
    return await create_link(
        db_session,
        influencer_id=influencer.id,
        title="Gaming Setup Tour",
        platform="TikTok",
        original_url="https://shop.example.com/chair",
    )


@pytest.mark.asyncio
async def test_referral_redirect_records_click(api, db_session, link):
    response = await api.get(
        f"/api/referral/{link.referral_code}",
        headers={
            "user-agent": "Mozilla/5.0 (iPhone) Mobile Safari/604.1",
            "referer": "https://www.tiktok.com/@creator",
            "x-forwarded-for": "203.0.113.7, 10.0.0.1",
        },
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://shop.example.com/chair"
    event = await db_session.scalar(select(AnalyticsEvent).where(AnalyticsEvent.link_id == link.id))
    assert event.ip_address == "203.0.113.7"
    assert event.device_type == "mobile"
    clicks = await db_session.scalar(select(ReferralLink.clicks).where(ReferralLink.id == link.id))
    assert clicks == 1


@pytest.mark.asyncio
async def test_unknown_or_expired_codes_redirect_home(api, db_session, influencer):
    expired = await create_link(
        db_session,
        influencer_id=influencer.id,
        title="Old Promo",
        platform="YouTube",
        original_url="https://shop.example.com/old",
        expires_at=utcnow() - timedelta(hours=1),
    )

    for code in ("does-not-exist", expired.referral_code):
        response = await api.get(f"/api/referral/{code}")
        assert response.status_code == 302
        assert response.headers["location"] == "http://test/"

    clicks = await db_session.scalar(select(ReferralLink.clicks).where(ReferralLink.id == expired.id))
    assert clicks == 0


@pytest.mark.asyncio
async def test_conversion_endpoint(api, link):
    payload = {"referral_code": link.referral_code, "conversion_value": 9.99, "metadata": {"order": "1"}}
    first = await api.post("/api/referral/conversion", json=payload)
    second = await api.post(
        "/api/referral/conversion",
        json={"referralCode": link.referral_code, "conversionValue": 9.99},
    )

    assert first.status_code == 200
    assert first.json()["message"] == "Conversion tracked successfully"
    data = second.json()["data"]
    assert data["link_id"] == link.id
    assert data["conversions"] == 2
    assert data["earnings"] == pytest.approx(19.98)


@pytest.mark.asyncio
async def test_conversion_errors_use_error_envelope(api, link):
    missing = await api.post("/api/referral/conversion", json={"referral_code": "nope", "conversion_value": 1})
    assert missing.status_code == 404
    assert missing.json() == {"error": "Referral link not found or inactive"}

    negative = await api.post(
        "/api/referral/conversion",
        json={"referral_code": link.referral_code, "conversion_value": -5},
    )
    assert negative.status_code == 400
    assert set(negative.json()) == {"error"}


@pytest.mark.asyncio
async def test_signup_endpoint(api, link):
    body = {"referral_code": link.referral_code, "name": "Jordan", "email": "jordan@example.com", "age": 22}

    created = await api.post("/api/referral/signup", json=body)
    duplicate = await api.post("/api/referral/signup", json=body)

    assert created.status_code == 201
    assert created.json()["success"] is True
    assert created.json()["referral_id"]
    assert duplicate.status_code == 409
    assert duplicate.json() == {"error": "Email already registered for this influencer"}


@pytest.mark.asyncio
async def test_signup_validation_errors_are_400(api, link):
    missing = await api.post("/api/referral/signup", json={"referral_code": link.referral_code})
    assert missing.status_code == 400
    assert missing.json() == {"error": "Missing required fields: referral_code, name, email"}

    bad_age = await api.post(
        "/api/referral/signup",
        json={"referral_code": link.referral_code, "name": "A", "email": "a@example.com", "age": -1},
    )
    assert bad_age.status_code == 400
    assert bad_age.json()["error"].startswith("age:")


@pytest.mark.asyncio
async def test_link_crud(api, influencer):
    created = await api.post(
        "/api/links",
        json={
            "influencerId": influencer.id,
            "title": "Summer Gadgets",
            "platform": "YouTube",
            "originalUrl": "https://shop.example.com/gadgets",
        },
    )
    assert created.status_code == 201
    link = created.json()
    assert link["referral_code"].startswith("summer-gadgets-")
    assert link["conversion_rate"] == 0.0

    listed = await api.get("/api/links", params={"influencer_id": influencer.id})
    assert listed.json()["total"] == 1

    patched = await api.patch(f"/api/links/{link['id']}", json={"description": "Updated"})
    assert patched.status_code == 200
    assert patched.json()["description"] == "Updated"
    assert patched.json()["title"] == "Summer Gadgets"

    rejected = await api.patch(f"/api/links/{link['id']}", json={"clicks": 50})
    assert rejected.status_code == 400

    toggled = await api.post(f"/api/links/{link['id']}/toggle")
    assert toggled.json()["is_active"] is False

    summary = await api.get("/api/links/summary", params={"influencer_id": influencer.id})
    assert summary.json()["active_links"] == 0

    deleted = await api.delete(f"/api/links/{link['id']}")
    assert deleted.json() == {"success": True, "message": "Referral link deleted successfully"}
    gone = await api.get(f"/api/links/{link['id']}")
    assert gone.status_code == 404
    assert gone.json() == {"error": "Referral link not found"}


@pytest.mark.asyncio
async def test_create_link_rejects_bad_platform(api, influencer):
    response = await api.post(
        "/api/links",
        json={
            "influencer_id": influencer.id,
            "title": "Nope",
            "platform": "Friendster",
            "original_url": "https://example.com",
        },
    )
    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid platform")


@pytest.mark.asyncio
async def test_link_and_influencer_analytics(api, influencer, link):
    await api.get(f"/api/referral/{link.referral_code}", headers={"user-agent": "Firefox/121.0"})
    await api.post(
        "/api/referral/conversion",
        json={"referral_code": link.referral_code, "conversion_value": 20},
    )

    response = await api.get(f"/api/links/{link.id}/analytics", params={"days": 30})
    assert response.status_code == 200
    report = response.json()
    assert report["scope"] == "link"
    assert report["windowDays"] == 30
    assert report["totalClicks"] == 1
    assert report["totalConversions"] == 1
    assert report["conversionRate"] == pytest.approx(100.0)
    assert report["totalEarnings"] == pytest.approx(20.0)
    assert len(report["clicksByDay"]) == 30
    assert report["browserBreakdown"] == [{"name": "Firefox", "count": 1}]
    assert report["topReferrers"] == [{"referrer": "Direct", "clicks": 1}]
    assert report["recentActivity"][0]["eventType"] in ("click", "conversion")

    overall = await api.get(f"/api/analytics/influencer/{influencer.id}")
    assert overall.json()["scopeId"] == influencer.id
    assert overall.json()["totalClicks"] == 1

    bad_window = await api.get(f"/api/links/{link.id}/analytics", params={"days": 14})
    assert bad_window.status_code == 400


@pytest.mark.asyncio
async def test_referrals_endpoints(api, influencer, link):
    signup = await api.post(
        "/api/referral/signup",
        json={"referral_code": link.referral_code, "name": "Riley", "email": "riley@example.com"},
    )
    referral_id = signup.json()["referral_id"]

    listed = await api.get("/api/referrals", params={"influencer_id": influencer.id})
    assert listed.json()["total"] == 1
    assert listed.json()["referrals"][0]["referral_link"]["referral_code"] == link.referral_code

    updated = await api.patch(f"/api/referrals/{referral_id}/status", json={"status": "completed"})
    assert updated.json()["status"] == "completed"
    invalid = await api.patch(f"/api/referrals/{referral_id}/status", json={"status": "lost"})
    assert invalid.status_code == 400

    summary = await api.get("/api/referrals/summary", params={"influencer_id": influencer.id})
    assert summary.json()["by_status"]["completed"] == 1
    assert summary.json()["top_platform"] == "TikTok"

    deleted = await api.delete(f"/api/referrals/{referral_id}")
    assert deleted.json()["message"] == "Referral deleted successfully"

    missing_param = await api.get("/api/referrals")
    assert missing_param.status_code == 400


@pytest.mark.asyncio
async def test_bot_lifecycle(api, db_session):
    client = Client(name="Acme", industry="Gaming", status="Active")
    db_session.add(client)
    await db_session.commit()

    created = await api.post(
        "/api/bots", json={"name": "Helper", "clientId": client.id, "template": "standard"}
    )
    assert created.status_code == 201
    bot = created.json()["bot"]
    assert bot["status"] == "Offline"
    assert bot["client"]["name"] == "Acme"

    stopped = await api.post(f"/api/bots/{bot['id']}/control", json={"action": "stop"})
    assert stopped.json()["bot"]["status"] == "Offline"
    assert stopped.json()["message"] == "Bot stopped successfully"

    started = await api.post(f"/api/bots/{bot['id']}/control", json={"action": "start"})
    assert started.json()["bot"]["status"] == "Online"
    assert started.json()["bot"]["last_online"] is not None

    unknown = await api.post(f"/api/bots/{bot['id']}/control", json={"action": "reboot"})
    assert unknown.status_code == 400
    assert unknown.json() == {"error": "Invalid action. Must be start, stop, or restart"}

    missing = await api.post("/api/bots/missing/control", json={"action": "start"})
    assert missing.status_code == 404

    updated = await api.put(f"/api/bots/{bot['id']}", json={"servers": 3, "id": "ignored"})
    assert updated.json()["bot"]["servers"] == 3
    assert updated.json()["bot"]["id"] == bot["id"]

    stats = await api.get("/api/bots/stats")
    assert stats.json()["stats"]["totalBots"] == 1
    assert stats.json()["stats"]["onlineBots"] == 1

    deleted = await api.delete(f"/api/bots/{bot['id']}")
    assert deleted.json() == {"success": True, "message": "Bot deleted successfully"}
    assert (await api.get(f"/api/bots/{bot['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_bot_update_rejects_malformed_fields(api, db_session):
    client = Client(name="Acme", industry="Gaming", status="Active")
    db_session.add(client)
    await db_session.commit()
    created = await api.post(
        "/api/bots", json={"name": "Helper", "clientId": client.id, "template": "standard"}
    )
    bot_id = created.json()["bot"]["id"]

    wrong_type = await api.put(f"/api/bots/{bot_id}", json={"servers": "abc"})
    assert wrong_type.status_code == 400
    assert wrong_type.json()["error"].startswith("servers: ")

    out_of_range = await api.put(f"/api/bots/{bot_id}", json={"uptimePercentage": 120})
    assert out_of_range.status_code == 400

    unknown = await api.put(f"/api/bots/{bot_id}", json={"discord_token": "secret"})
    assert unknown.status_code == 400

    cleared = await api.put(f"/api/bots/{bot_id}", json={"name": None})
    assert cleared.status_code == 400
    assert cleared.json() == {"error": "Fields cannot be empty: name"}

    current = await api.get(f"/api/bots/{bot_id}")
    assert current.json()["bot"]["name"] == "Helper"
    assert current.json()["bot"]["servers"] == 0


@pytest.mark.asyncio
async def test_dashboard_endpoint(api, db_session, influencer, link):
    await api.get(f"/api/referral/{link.referral_code}")

    response = await api.get(
        "/api/dashboard", headers={"X-User-Id": influencer.id, "X-User-Role": "influencer"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["stats"]["primary"] == 1
    assert data["stats"]["primaryLabel"] == "Total Clicks"
    assert data["stats"]["conversionRate"] == 0.0
    assert data["primaryList"][0]["id"] == link.id
    assert data["metadata"]["role"] == "influencer"
    assert "lastUpdated" in data["metadata"]


@pytest.mark.asyncio
async def test_dashboard_requires_identity_and_known_role(api, influencer):
    missing = await api.get("/api/dashboard")
    assert missing.status_code == 400

    unknown = await api.get(
        "/api/dashboard", headers={"X-User-Id": influencer.id, "X-User-Role": "guest"}
    )
    assert unknown.status_code == 400
    assert unknown.json() == {"error": "Unsupported role: guest"}
