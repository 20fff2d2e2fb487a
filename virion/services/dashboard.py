"""Per-role dashboard data.

Every role renders the same widget shape (four stats, two lists and an
activity feed). ``ROLE_CONFIGS`` says where each piece comes from for a given
role; ``transform`` is the one reducer that applies it. ``fetch_role_data``
runs the role's queries and ``DashboardLoader`` wraps both with the timeout,
retry and per-viewer cancellation rules.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from virion.config import settings
from virion.models.database import Bot, Client, Referral, ReferralLink, UserProfile, as_utc, utcnow
from virion.services.errors import DashboardTimeoutError, StorageError, ValidationError

logger = logging.getLogger(__name__)

LIST_LIMIT = 10
ACTIVITY_LIMIT = 5
STAT_SLOTS = ("primary", "secondary", "tertiary", "quaternary")
TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError, ConnectionError)


def _money(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    return float(Decimal(str(value)))


def time_ago(timestamp: Optional[datetime], now: Optional[datetime] = None) -> str:
    now = as_utc(now or utcnow())
    minutes = int((now - (as_utc(timestamp) or now)).total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} min ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days > 1 else ''} ago"


def _created(timestamp: Optional[datetime], now: datetime) -> str:
    return (as_utc(timestamp) or now).date().isoformat()


# -- rows -------------------------------------------------------------------
# Query results are flattened to plain dicts before they reach ``transform``
# so the reducer never touches a session.


def _link_row(link: ReferralLink) -> dict:
    return {
        "id": link.id,
        "title": link.title,
        "platform": link.platform,
        "clicks": link.clicks or 0,
        "conversions": link.conversions or 0,
        "earnings": _money(link.earnings),
        "referral_url": link.referral_url,
        "created_at": link.created_at,
    }


def _campaign_row(link: ReferralLink) -> dict:
    row = _link_row(link)
    row["influencer_name"] = link.influencer.full_name if link.influencer else None
    return row


def _referral_row(referral: Referral) -> dict:
    return {
        "id": referral.id,
        "influencer_id": referral.influencer_id,
        "name": referral.name,
        "email": referral.email,
        "status": referral.status,
        "source_platform": referral.source_platform,
        "conversion_value": _money(referral.conversion_value),
        "created_at": referral.created_at,
    }


def _referral_with_link_row(referral: Referral) -> dict:
    row = _referral_row(referral)
    row["referral_link_title"] = referral.referral_link.title if referral.referral_link else None
    return row


def _client_row(client: Client) -> dict:
    return {
        "id": client.id,
        "name": client.name,
        "contact_email": client.contact_email,
        "status": client.status,
        "bots": client.bots or 0,
        "influencers": client.influencers or 0,
        "created_at": client.created_at,
    }


def _bot_row(bot: Bot) -> dict:
    return {
        "id": bot.id,
        "name": bot.name,
        "client_name": bot.client.name if bot.client else None,
        "status": bot.status,
        "servers": bot.servers or 0,
        "users": bot.users or 0,
        "commands_used": bot.commands_used or 0,
        "uptime_percentage": _money(bot.uptime_percentage),
        "created_at": bot.created_at,
    }


def _user_row(user: UserProfile) -> dict:
    return {"id": user.id, "role": user.role, "created_at": user.created_at}


def _influencer_row(row) -> dict:
    user, conversions = row
    return {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "role": user.role,
        "conversions": int(conversions or 0),
        "created_at": user.created_at,
    }


# -- queries ----------------------------------------------------------------


@dataclass(frozen=True)
class Query:
    statement: Any
    to_row: Callable[[Any], dict]
    scalars: bool = True


def _influencer_queries(user_id: str) -> dict[str, Query]:
    return {
        "links": Query(
            select(ReferralLink)
            .where(ReferralLink.influencer_id == user_id)
            .order_by(ReferralLink.created_at.desc())
            .limit(50),
            _link_row,
        ),
        "referrals": Query(
            select(Referral)
            .join(Referral.referral_link)
            .options(selectinload(Referral.referral_link))
            .where(Referral.influencer_id == user_id)
            .order_by(Referral.created_at.desc())
            .limit(100),
            _referral_with_link_row,
        ),
    }


def _admin_queries(user_id: str) -> dict[str, Query]:
    return {
        "clients": Query(select(Client).order_by(Client.created_at.desc()).limit(50), _client_row),
        "bots": Query(
            select(Bot)
            .join(Bot.client)
            .options(selectinload(Bot.client))
            .order_by(Bot.created_at.desc())
            .limit(50),
            _bot_row,
        ),
        "users": Query(select(UserProfile).limit(1000), _user_row),
    }


def _client_queries(user_id: str) -> dict[str, Query]:
    return {
        "campaigns": Query(
            select(ReferralLink)
            .options(selectinload(ReferralLink.influencer))
            .order_by(ReferralLink.conversions.desc())
            .limit(50),
            _campaign_row,
        ),
        "influencers": Query(
            select(UserProfile, func.coalesce(func.sum(ReferralLink.conversions), 0))
            .outerjoin(ReferralLink, ReferralLink.influencer_id == UserProfile.id)
            .where(UserProfile.role == "influencer")
            .group_by(UserProfile.id)
            .limit(50),
            _influencer_row,
            scalars=False,
        ),
        "conversions": Query(
            select(Referral)
            .where(Referral.status == "completed")
            .order_by(Referral.created_at.desc())
            .limit(100),
            _referral_row,
        ),
    }


# -- per-role mapping -------------------------------------------------------


def _link_item(link: dict, now: datetime) -> dict:
    clicks = link.get("clicks") or 0
    return {
        "id": link["id"],
        "title": link["title"],
        "subtitle": link["platform"],
        "value": clicks,
        "status": "active" if clicks > 0 else "inactive",
        "metadata": {
            "conversions": link.get("conversions") or 0,
            "earnings": _money(link.get("earnings")),
            "url": link.get("referral_url"),
        },
        "created": _created(link.get("created_at"), now),
    }


def _referral_item(referral: dict, now: datetime) -> dict:
    return {
        "id": referral["id"],
        "title": referral["name"],
        "subtitle": referral["email"],
        "value": referral["conversion_value"],
        "status": referral["status"],
        "metadata": {
            "source": referral["source_platform"],
            "referralLink": referral.get("referral_link_title") or "Unknown",
        },
        "created": _created(referral["created_at"], now),
    }


def _client_item(client: dict, now: datetime) -> dict:
    created_at = as_utc(client["created_at"])
    return {
        "id": client["id"],
        "title": client["name"],
        "subtitle": client["contact_email"] or "No contact",
        "value": client["bots"],
        "status": client["status"] or "active",
        "metadata": {
            "influencers": client["influencers"],
            "createdAt": created_at.isoformat() if created_at else None,
        },
        "created": _created(created_at, now),
    }


def _bot_item(bot: dict, now: datetime) -> dict:
    return {
        "id": bot["id"],
        "title": bot["name"],
        "subtitle": bot["client_name"] or "Unknown Client",
        "value": bot["servers"],
        "status": "active" if bot["status"] == "Online" else "inactive",
        "metadata": {
            "users": bot["users"],
            "commands": bot["commands_used"],
            "uptime": bot["uptime_percentage"],
        },
        "created": _created(bot["created_at"], now),
    }


def _campaign_item(campaign: dict, now: datetime) -> dict:
    return {
        "id": campaign["id"],
        "title": campaign["title"],
        "subtitle": campaign["platform"],
        "value": campaign["conversions"],
        "status": "active" if campaign["conversions"] > 0 else "inactive",
        "metadata": {
            "clicks": campaign["clicks"],
            "earnings": campaign["earnings"],
            "influencer": campaign.get("influencer_name") or "Unknown",
        },
        "created": _created(campaign["created_at"], now),
    }


def _influencer_item(influencer: dict, now: datetime) -> dict:
    created_at = as_utc(influencer["created_at"])
    return {
        "id": influencer["id"],
        "title": influencer["full_name"],
        "subtitle": influencer["email"],
        "value": influencer["conversions"],
        "status": "active" if influencer["conversions"] > 0 else "inactive",
        "metadata": {
            "role": influencer["role"],
            "joinDate": created_at.isoformat() if created_at else None,
        },
        "created": _created(created_at, now),
    }


def _influencer_activity(sources: dict, now: datetime) -> list[dict]:
    activity = []
    for referral in sources["referrals"]:
        if referral["status"] == "completed":
            action = f"Completed purchase - ${referral['conversion_value']:.2f}"
        else:
            verb = "Signed up" if referral["status"] == "active" else "Clicked"
            action = f"{verb} via {referral['source_platform']}"
        activity.append(
            {
                "id": referral["id"],
                "user": referral["name"],
                "action": action,
                "time": time_ago(referral["created_at"], now),
                "type": "success" if referral["status"] == "completed" else "info",
            }
        )
    return activity


def _admin_activity(sources: dict, now: datetime) -> list[dict]:
    activity = [
        {
            "id": f"client-{client['id']}",
            "user": "System",
            "action": f'New client "{client["name"]}" was added',
            "time": time_ago(client["created_at"], now),
            "type": "success",
        }
        for client in sources["clients"][:3]
    ]
    activity.extend(
        {
            "id": f"bot-{bot['id']}",
            "user": "System",
            "action": f'Bot "{bot["name"]}" was deployed',
            "time": time_ago(bot["created_at"], now),
            "type": "info",
        }
        for bot in sources["bots"][:2]
    )
    return activity


def _client_activity(sources: dict, now: datetime) -> list[dict]:
    return [
        {
            "id": conversion["id"],
            "user": conversion["name"],
            "action": f"Completed conversion - ${conversion['conversion_value']:.2f}",
            "time": time_ago(conversion["created_at"], now),
            "type": "success",
        }
        for conversion in sources["conversions"]
    ]


def _sum(source: str, key: str) -> Callable[[dict], float]:
    return lambda sources: sum(row.get(key) or 0 for row in sources[source])


def _money_sum(source: str, key: str) -> Callable[[dict], float]:
    return lambda sources: sum(_money(row.get(key)) for row in sources[source])


def _count(source: str, predicate: Callable[[dict], bool] = lambda row: True) -> Callable[[dict], int]:
    return lambda sources: sum(1 for row in sources[source] if predicate(row))


def _rate(numerator: Callable[[dict], float], denominator: Callable[[dict], float]) -> Callable[[dict], float]:
    def reducer(sources: dict) -> float:
        total = denominator(sources)
        return (numerator(sources) / total * 100) if total > 0 else 0.0

    return reducer


@dataclass(frozen=True)
class RoleConfig:
    sources: tuple[str, ...]
    queries: Callable[[str], dict[str, Query]]
    stats: tuple[tuple[str, Callable[[dict], float]], ...]
    primary: tuple[str, Callable[[dict, datetime], dict]]
    secondary: tuple[str, Callable[[dict, datetime], dict]]
    activity: Callable[[dict, datetime], list[dict]]
    permissions: tuple[str, ...]
    extra_stats: dict[str, Callable[[dict], float]] = field(default_factory=dict)


ROLE_CONFIGS: dict[str, RoleConfig] = {
    "influencer": RoleConfig(
        sources=("links", "referrals"),
        queries=_influencer_queries,
        stats=(
            ("Total Clicks", _sum("links", "clicks")),
            ("Conversions", _sum("links", "conversions")),
            ("Earnings", _money_sum("links", "earnings")),
            ("Active Links", _count("links", lambda link: (link.get("clicks") or 0) > 0)),
        ),
        primary=("links", _link_item),
        secondary=("referrals", _referral_item),
        activity=_influencer_activity,
        permissions=("view_links", "create_links", "view_referrals"),
        extra_stats={
            "conversion_rate": _rate(_sum("links", "conversions"), _sum("links", "clicks")),
        },
    ),
    "admin": RoleConfig(
        sources=("clients", "bots", "users"),
        queries=_admin_queries,
        stats=(
            ("Total Clients", _count("clients")),
            ("Total Bots", _count("bots")),
            ("Total Users", _count("users")),
            ("Active Bots", _count("bots", lambda bot: bot["status"] == "Online")),
        ),
        primary=("clients", _client_item),
        secondary=("bots", _bot_item),
        activity=_admin_activity,
        permissions=("view_all", "manage_clients", "manage_bots", "manage_users"),
    ),
    "client": RoleConfig(
        sources=("campaigns", "influencers", "conversions"),
        queries=_client_queries,
        stats=(
            ("Campaigns", _count("campaigns")),
            (
                "Active Influencers",
                lambda sources: len({row["influencer_id"] for row in sources["conversions"]}),
            ),
            ("Conversions", _count("conversions")),
            ("Revenue ($)", lambda sources: round(_money_sum("campaigns", "earnings")(sources))),
        ),
        primary=("campaigns", _campaign_item),
        secondary=("influencers", _influencer_item),
        activity=_client_activity,
        permissions=("view_campaigns", "view_influencers", "view_analytics"),
    ),
}


def _config_for(role: str) -> RoleConfig:
    config = ROLE_CONFIGS.get(role)
    if config is None:
        raise ValidationError(f"Unsupported role: {role}")
    return config


def transform(
    role: str,
    raw: dict,
    now: Optional[datetime] = None,
    *,
    list_limit: int = LIST_LIMIT,
    activity_limit: int = ACTIVITY_LIMIT,
) -> dict:
    """Reduce one role's query results to the shared dashboard shape.

    Pure: the same ``raw`` and ``now`` always give the same result.
    """
    config = _config_for(role)
    now = as_utc(now or utcnow())
    sources = {name: list(raw.get(name) or []) for name in config.sources}

    stats: dict[str, Any] = {}
    for slot, (label, reducer) in zip(STAT_SLOTS, config.stats):
        stats[slot] = reducer(sources)
        stats[f"{slot}_label"] = label
    for name, reducer in config.extra_stats.items():
        stats[name] = reducer(sources)

    primary_source, primary_item = config.primary
    secondary_source, secondary_item = config.secondary
    return {
        "stats": stats,
        "primary_list": [primary_item(row, now) for row in sources[primary_source][:list_limit]],
        "secondary_list": [
            secondary_item(row, now) for row in sources[secondary_source][:list_limit]
        ],
        "recent_activity": config.activity(sources, now)[:activity_limit],
        "metadata": {
            "role": role,
            "permissions": list(config.permissions),
            "last_updated": now.isoformat(),
        },
    }


async def _run_query(session_factory: async_sessionmaker, query: Query) -> list[dict]:
    async with session_factory() as session:
        result = await session.execute(query.statement)
        rows = result.scalars().all() if query.scalars else result.all()
        return [query.to_row(row) for row in rows]


async def fetch_role_data(session_factory: async_sessionmaker, role: str, user_id: str) -> dict:
    """Run a role's queries side by side, one session each."""
    queries = _config_for(role).queries(user_id)
    names = list(queries)
    results = await asyncio.gather(
        *(_run_query(session_factory, queries[name]) for name in names)
    )
    return dict(zip(names, results))


class DashboardLoader:
    """Loads dashboards per viewer.

    A new load for a viewer cancels the one still in flight, and the caller of
    the cancelled load receives the newer load's outcome. Nothing is kept per
    viewer once its loads have settled.
    """

    def __init__(
        self,
        fetcher: Callable[[str, str], Awaitable[dict]],
        *,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        list_limit: Optional[int] = None,
        activity_limit: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.fetcher = fetcher
        self.timeout_seconds = (
            settings.dashboard_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self.max_retries = settings.dashboard_max_retries if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.dashboard_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.list_limit = settings.dashboard_list_limit if list_limit is None else list_limit
        self.activity_limit = (
            settings.dashboard_activity_limit if activity_limit is None else activity_limit
        )
        self.clock = clock
        self._inflight: dict[str, asyncio.Task] = {}
        # cancelled task -> the task that replaced it
        self._superseded: dict[asyncio.Task, asyncio.Task] = {}

    async def load(self, user_id: str, role: str) -> dict:
        _config_for(role)
        task = asyncio.create_task(self._load_with_retries(user_id, role))
        previous = self._inflight.get(user_id)
        if previous is not None and not previous.done():
            logger.info("Cancelling in-flight dashboard load for %s", user_id)
            self._superseded[previous] = task
            previous.cancel()
        self._inflight[user_id] = task
        try:
            return await self._outcome(task)
        finally:
            self._superseded.pop(task, None)
            if self._inflight.get(user_id) is task:
                del self._inflight[user_id]

    async def _outcome(self, task: asyncio.Task) -> dict:
        pending = task
        while True:
            try:
                return await pending
            except asyncio.CancelledError:
                successor = self._superseded.get(task)
                if successor is None or not task.cancelled():
                    raise
                task = successor
                pending = asyncio.shield(successor)

    async def _load_with_retries(self, user_id: str, role: str) -> dict:
        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                raw = await asyncio.wait_for(
                    self.fetcher(role, user_id), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "Dashboard load for %s timed out after %ss", user_id, self.timeout_seconds
                )
                raise DashboardTimeoutError(
                    f"Data loading timed out after {self.timeout_seconds:g} seconds. "
                    "Please try refreshing."
                ) from exc
            except TRANSIENT_ERRORS as exc:
                last_exc = exc
                if attempt >= self.max_retries:
                    break
                logger.warning(
                    "Retrying dashboard load for %s (attempt %d): %s", user_id, attempt + 1, exc
                )
                await asyncio.sleep(self.backoff_seconds * (attempt + 1))
                continue
            except SQLAlchemyError as exc:
                logger.error("Dashboard load for %s failed: %s", user_id, exc)
                raise StorageError("Failed to fetch dashboard data") from exc
            return transform(
                role,
                raw,
                now=self.clock(),
                list_limit=self.list_limit,
                activity_limit=self.activity_limit,
            )
        logger.error("Dashboard load for %s failed after retries: %s", user_id, last_exc)
        raise StorageError("Failed to fetch dashboard data") from last_exc
