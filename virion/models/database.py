import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")

PLATFORMS = ("YouTube", "Instagram", "TikTok", "Twitter", "Facebook", "LinkedIn", "Other")
REFERRAL_STATUSES = ("pending", "active", "completed", "inactive")
BOT_STATUSES = ("Online", "Offline", "Maintenance", "Error")
BOT_TEMPLATES = ("standard", "advanced", "custom")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class UserProfile(Base):
    __tablename__ = "user_profiles"
    __table_args__ = (Index("idx_user_profiles_role", "role"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default="influencer")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    referral_links: Mapped[list["ReferralLink"]] = relationship(back_populates="influencer")


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (Index("idx_clients_status", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255))
    industry: Mapped[str] = mapped_column(String(100))
    contact_email: Mapped[Optional[str]] = mapped_column(String(255))
    primary_contact: Mapped[Optional[str]] = mapped_column(String(255))
    website: Mapped[Optional[str]] = mapped_column(String(500))
    logo: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(20), default="Active")
    bots: Mapped[int] = mapped_column(Integer, default=0)
    influencers: Mapped[int] = mapped_column(Integer, default=0)
    join_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    bot_records: Mapped[list["Bot"]] = relationship(
        back_populates="client", cascade="all, delete-orphan", passive_deletes=True
    )


class Bot(Base):
    __tablename__ = "bots"
    __table_args__ = (
        Index("idx_bots_client", "client_id"),
        Index("idx_bots_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(255))
    discord_bot_id: Mapped[Optional[str]] = mapped_column(String(64))
    discord_token: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="Offline")
    template: Mapped[str] = mapped_column(String(20), default="standard")
    prefix: Mapped[Optional[str]] = mapped_column(String(10), default="!")
    description: Mapped[Optional[str]] = mapped_column(Text)
    auto_deploy: Mapped[bool] = mapped_column(Boolean, default=False)
    servers: Mapped[int] = mapped_column(Integer, default=0)
    users: Mapped[int] = mapped_column(Integer, default=0)
    commands_used: Mapped[int] = mapped_column(Integer, default=0)
    uptime_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    last_online: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    invite_url: Mapped[Optional[str]] = mapped_column(String(500))
    webhook_url: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    client: Mapped["Client"] = relationship(back_populates="bot_records")


class ReferralLink(Base):
    __tablename__ = "referral_links"
    __table_args__ = (
        Index("idx_referral_links_influencer", "influencer_id"),
        Index("idx_referral_links_created", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    influencer_id: Mapped[str] = mapped_column(ForeignKey("user_profiles.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    platform: Mapped[str] = mapped_column(String(20))
    original_url: Mapped[str] = mapped_column(String(2000))
    referral_code: Mapped[str] = mapped_column(String(300), unique=True, index=True)
    referral_url: Mapped[str] = mapped_column(String(500))
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(2000))
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    influencer: Mapped["UserProfile"] = relationship(back_populates="referral_links")
    events: Mapped[list["AnalyticsEvent"]] = relationship(
        back_populates="link", cascade="all, delete-orphan", passive_deletes=True
    )
    referrals: Mapped[list["Referral"]] = relationship(
        back_populates="referral_link", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def conversion_rate(self) -> float:
        clicks = self.clicks or 0
        if clicks <= 0:
            return 0.0
        return (self.conversions or 0) / clicks * 100

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) < (now or utcnow())


class AnalyticsEvent(Base):
    __tablename__ = "referral_analytics"
    __table_args__ = (
        Index("idx_referral_analytics_link_created", "link_id", "created_at"),
        Index("idx_referral_analytics_event_type", "event_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    link_id: Mapped[str] = mapped_column(ForeignKey("referral_links.id", ondelete="CASCADE"))
    event_type: Mapped[str] = mapped_column(String(20))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    ip_address: Mapped[Optional[str]] = mapped_column(String(255))
    referrer: Mapped[Optional[str]] = mapped_column(Text)
    country: Mapped[Optional[str]] = mapped_column(String(100))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    device_type: Mapped[Optional[str]] = mapped_column(String(20))
    browser: Mapped[Optional[str]] = mapped_column(String(50))
    conversion_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    link: Mapped["ReferralLink"] = relationship(back_populates="events")


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("influencer_id", "email", name="uq_referrals_influencer_email"),
        Index("idx_referrals_status", "status"),
        Index("idx_referrals_link", "referral_link_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    influencer_id: Mapped[str] = mapped_column(String(36), index=True)
    referral_link_id: Mapped[str] = mapped_column(
        ForeignKey("referral_links.id", ondelete="CASCADE")
    )
    referred_user_id: Mapped[Optional[str]] = mapped_column(String(36))
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255))
    discord_id: Mapped[Optional[str]] = mapped_column(String(64))
    age: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    source_platform: Mapped[str] = mapped_column(String(20))
    conversion_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    referral_link: Mapped["ReferralLink"] = relationship(back_populates="referrals")
