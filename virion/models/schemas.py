from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from virion.services.bots import READ_ONLY_FIELDS as BOT_READ_ONLY_FIELDS


# -- referral attribution -----------------------------------------------------


class ConversionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    referral_code: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("referral_code", "referralCode")
    )
    conversion_value: Optional[float] = Field(
        default=0, validation_alias=AliasChoices("conversion_value", "conversionValue")
    )
    metadata: Optional[dict] = None


class ConversionDataSchema(BaseModel):
    link_id: str
    conversions: int
    earnings: float
    conversion_value: float


class ConversionResponse(BaseModel):
    success: bool
    message: str
    data: ConversionDataSchema


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    referral_code: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("referral_code", "referralCode")
    )
    name: Optional[str] = None
    email: Optional[str] = None
    discord_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("discord_id", "discordId")
    )
    age: Optional[int] = Field(default=None, ge=0)
    user_agent: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("user_agent", "userAgent")
    )
    ip_address: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("ip_address", "ipAddress")
    )
    referrer: Optional[str] = None


class SignupResponse(BaseModel):
    success: bool
    referral_id: str
    message: str


class MessageResponse(BaseModel):
    success: bool
    message: str


# -- referral links -----------------------------------------------------------


class LinkSchema(BaseModel):
    id: str
    influencer_id: str
    title: str
    description: Optional[str] = None
    platform: str
    original_url: str
    referral_code: str
    referral_url: str
    thumbnail_url: Optional[str] = None
    clicks: int
    conversions: int
    earnings: float
    conversion_rate: float
    is_active: bool
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LinkListResponse(BaseModel):
    links: List[LinkSchema]
    total: int


class LinkCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    influencer_id: str = Field(validation_alias=AliasChoices("influencer_id", "influencerId"))
    title: Optional[str] = None
    platform: Optional[str] = None
    original_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("original_url", "originalUrl")
    )
    description: Optional[str] = None
    thumbnail_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("thumbnail_url", "thumbnailUrl")
    )
    expires_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("expires_at", "expiresAt")
    )
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))


class LinkUpdateRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    platform: Optional[str] = None
    original_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("original_url", "originalUrl")
    )
    thumbnail_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("thumbnail_url", "thumbnailUrl")
    )
    is_active: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("is_active", "isActive")
    )
    expires_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("expires_at", "expiresAt")
    )


class LinkSummarySchema(BaseModel):
    total_links: int
    active_links: int
    total_clicks: int
    total_conversions: int
    total_earnings: float
    average_conversion_rate: float


# -- referrals ----------------------------------------------------------------


class ReferralLinkRefSchema(BaseModel):
    id: str
    title: str
    platform: str
    referral_code: str


class ReferralSchema(BaseModel):
    id: str
    influencer_id: str
    referral_link_id: str
    name: str
    email: str
    discord_id: Optional[str] = None
    age: Optional[int] = None
    status: str
    source_platform: str
    conversion_value: float
    metadata: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    referral_link: Optional[ReferralLinkRefSchema] = None


class ReferralListResponse(BaseModel):
    referrals: List[ReferralSchema]
    total: int


class ReferralStatusRequest(BaseModel):
    status: Optional[str] = None


class ReferralSummarySchema(BaseModel):
    total: int
    by_status: dict[str, int]
    total_earnings: float
    conversion_rate: float
    top_platform: str
    platform_counts: dict[str, int]
    average_age: float


# -- analytics ----------------------------------------------------------------


class DailyPointSchema(BaseModel):
    date: str
    day: str
    clicks: int
    conversions: int


class BreakdownEntrySchema(BaseModel):
    name: str
    count: int


class ReferrerEntrySchema(BaseModel):
    referrer: str
    clicks: int


class AnalyticsEventSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    linkId: str = Field(validation_alias=AliasChoices("linkId", "link_id"))
    eventType: str = Field(validation_alias=AliasChoices("eventType", "event_type"))
    deviceType: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("deviceType", "device_type")
    )
    browser: Optional[str] = None
    referrer: Optional[str] = None
    country: Optional[str] = None
    conversionValue: float = Field(
        default=0, validation_alias=AliasChoices("conversionValue", "conversion_value")
    )
    metadata: dict = Field(default_factory=dict)
    createdAt: datetime = Field(validation_alias=AliasChoices("createdAt", "created_at"))


class AnalyticsReportSchema(BaseModel):
    """Click/conversion report for one link or all of an influencer's links."""

    model_config = ConfigDict(populate_by_name=True)

    scope: str
    scopeId: str = Field(validation_alias=AliasChoices("scopeId", "scope_id"))
    windowDays: int = Field(validation_alias=AliasChoices("windowDays", "window_days"))
    totalClicks: int = Field(validation_alias=AliasChoices("totalClicks", "total_clicks"))
    totalConversions: int = Field(
        validation_alias=AliasChoices("totalConversions", "total_conversions")
    )
    conversionRate: float = Field(
        validation_alias=AliasChoices("conversionRate", "conversion_rate")
    )
    totalEarnings: float = Field(validation_alias=AliasChoices("totalEarnings", "total_earnings"))
    clicksByDay: List[DailyPointSchema] = Field(
        default_factory=list, validation_alias=AliasChoices("clicksByDay", "clicks_by_day")
    )
    deviceBreakdown: List[BreakdownEntrySchema] = Field(
        default_factory=list, validation_alias=AliasChoices("deviceBreakdown", "device_breakdown")
    )
    browserBreakdown: List[BreakdownEntrySchema] = Field(
        default_factory=list,
        validation_alias=AliasChoices("browserBreakdown", "browser_breakdown"),
    )
    topReferrers: List[ReferrerEntrySchema] = Field(
        default_factory=list, validation_alias=AliasChoices("topReferrers", "top_referrers")
    )
    recentActivity: List[AnalyticsEventSchema] = Field(
        default_factory=list, validation_alias=AliasChoices("recentActivity", "recent_activity")
    )


# -- dashboard ----------------------------------------------------------------


class DashboardStatsSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    primary: float
    secondary: float
    tertiary: float
    quaternary: float
    primaryLabel: str = Field(validation_alias=AliasChoices("primaryLabel", "primary_label"))
    secondaryLabel: str = Field(
        validation_alias=AliasChoices("secondaryLabel", "secondary_label")
    )
    tertiaryLabel: str = Field(validation_alias=AliasChoices("tertiaryLabel", "tertiary_label"))
    quaternaryLabel: str = Field(
        validation_alias=AliasChoices("quaternaryLabel", "quaternary_label")
    )
    conversionRate: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("conversionRate", "conversion_rate")
    )


class DashboardListItemSchema(BaseModel):
    id: str
    title: Optional[str] = None
    subtitle: Optional[str] = None
    value: float
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created: str


class DashboardActivitySchema(BaseModel):
    id: str
    user: Optional[str] = None
    action: str
    time: str
    type: str


class DashboardMetaSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: str
    permissions: List[str]
    lastUpdated: datetime = Field(validation_alias=AliasChoices("lastUpdated", "last_updated"))


class DashboardSchema(BaseModel):
    """Shared widget shape rendered by every role's dashboard."""

    model_config = ConfigDict(populate_by_name=True)

    stats: DashboardStatsSchema
    primaryList: List[DashboardListItemSchema] = Field(
        validation_alias=AliasChoices("primaryList", "primary_list")
    )
    secondaryList: List[DashboardListItemSchema] = Field(
        validation_alias=AliasChoices("secondaryList", "secondary_list")
    )
    recentActivity: List[DashboardActivitySchema] = Field(
        validation_alias=AliasChoices("recentActivity", "recent_activity")
    )
    metadata: DashboardMetaSchema


# -- bots ---------------------------------------------------------------------


class BotClientSchema(BaseModel):
    id: str
    name: str
    industry: Optional[str] = None


class BotSchema(BaseModel):
    id: str
    client_id: str
    name: str
    discord_bot_id: Optional[str] = None
    status: str
    template: str
    prefix: Optional[str] = None
    description: Optional[str] = None
    auto_deploy: bool = False
    servers: int
    users: int
    commands_used: int
    uptime_percentage: float
    last_online: Optional[datetime] = None
    avatar_url: Optional[str] = None
    invite_url: Optional[str] = None
    webhook_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    client: Optional[BotClientSchema] = None


class BotResponse(BaseModel):
    bot: BotSchema


class BotListResponse(BaseModel):
    bots: List[BotSchema]
    total: int


class BotCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    client_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("client_id", "clientId")
    )
    template: Optional[str] = None
    prefix: str = "!"
    description: Optional[str] = None
    auto_deploy: bool = Field(default=False, validation_alias=AliasChoices("auto_deploy", "autoDeploy"))
    avatar_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("avatar_url", "avatarUrl")
    )
    webhook_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("webhook_url", "webhookUrl")
    )
    discord_application_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("discord_application_id", "discordApplicationId"),
    )


class BotUpdateRequest(BaseModel):
    """Partial update; read-only columns in the body are dropped, anything else unknown is rejected."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    status: Optional[str] = None
    template: Optional[str] = None
    prefix: Optional[str] = None
    description: Optional[str] = None
    auto_deploy: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("auto_deploy", "autoDeploy")
    )
    servers: Optional[int] = Field(default=None, ge=0)
    users: Optional[int] = Field(default=None, ge=0)
    commands_used: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("commands_used", "commandsUsed")
    )
    uptime_percentage: Optional[float] = Field(
        default=None,
        ge=0,
        le=100,
        validation_alias=AliasChoices("uptime_percentage", "uptimePercentage"),
    )
    avatar_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("avatar_url", "avatarUrl")
    )
    invite_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("invite_url", "inviteUrl")
    )
    webhook_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("webhook_url", "webhookUrl")
    )

    @model_validator(mode="before")
    @classmethod
    def drop_read_only_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if key not in BOT_READ_ONLY_FIELDS}
        return data


class BotControlRequest(BaseModel):
    action: Optional[str] = None


class BotControlResponse(BaseModel):
    success: bool
    bot: BotSchema
    action: str
    message: str


class BotStatsSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    totalBots: int = Field(validation_alias=AliasChoices("totalBots", "total_bots"))
    onlineBots: int = Field(validation_alias=AliasChoices("onlineBots", "online_bots"))
    totalServers: int = Field(validation_alias=AliasChoices("totalServers", "total_servers"))
    totalUsers: int = Field(validation_alias=AliasChoices("totalUsers", "total_users"))
    totalCommands: int = Field(validation_alias=AliasChoices("totalCommands", "total_commands"))
    avgUptime: float = Field(validation_alias=AliasChoices("avgUptime", "avg_uptime"))
    onlinePercentage: float = Field(
        validation_alias=AliasChoices("onlinePercentage", "online_percentage")
    )
    avgServersPerBot: float = Field(
        validation_alias=AliasChoices("avgServersPerBot", "avg_servers_per_bot")
    )
    avgUsersPerBot: float = Field(
        validation_alias=AliasChoices("avgUsersPerBot", "avg_users_per_bot")
    )


class BotStatsResponse(BaseModel):
    stats: BotStatsSchema
