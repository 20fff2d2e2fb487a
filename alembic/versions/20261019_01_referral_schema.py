"""Referral links, analytics events, referrals, clients and bots

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 09:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="influencer"),
        *_timestamps(),
    )
    op.create_index("idx_user_profiles_role", "user_profiles", ["role"], unique=False)

    op.create_table(
        "clients",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("industry", sa.String(length=100), nullable=False),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("primary_contact", sa.String(length=255), nullable=True),
        sa.Column("website", sa.String(length=500), nullable=True),
        sa.Column("logo", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Active"),
        sa.Column("bots", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("influencers", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("join_date", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_clients_status", "clients", ["status"], unique=False)

    op.create_table(
        "bots",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "client_id",
            sa.String(length=36),
            sa.ForeignKey("clients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("discord_bot_id", sa.String(length=64), nullable=True),
        sa.Column("discord_token", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Offline"),
        sa.Column("template", sa.String(length=20), nullable=False, server_default="standard"),
        sa.Column("prefix", sa.String(length=10), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("auto_deploy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("servers", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("users", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("commands_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("uptime_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("last_online", sa.DateTime(timezone=True), nullable=True),
        sa.Column("avatar_url", sa.String(length=500), nullable=True),
        sa.Column("invite_url", sa.String(length=500), nullable=True),
        sa.Column("webhook_url", sa.String(length=500), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_bots_client", "bots", ["client_id"], unique=False)
    op.create_index("idx_bots_status", "bots", ["status"], unique=False)

    op.create_table(
        "referral_links",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "influencer_id",
            sa.String(length=36),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("platform", sa.String(length=20), nullable=False),
        sa.Column("original_url", sa.String(length=2000), nullable=False),
        sa.Column("referral_code", sa.String(length=300), nullable=False),
        sa.Column("referral_url", sa.String(length=500), nullable=False),
        sa.Column("thumbnail_url", sa.String(length=2000), nullable=True),
        sa.Column("clicks", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("conversions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("earnings", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_referral_links_referral_code", "referral_links", ["referral_code"], unique=True
    )
    op.create_index("idx_referral_links_influencer", "referral_links", ["influencer_id"], unique=False)
    op.create_index("idx_referral_links_created", "referral_links", ["created_at"], unique=False)

    op.create_table(
        "referral_analytics",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "link_id",
            sa.String(length=36),
            sa.ForeignKey("referral_links.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=255), nullable=True),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("device_type", sa.String(length=20), nullable=True),
        sa.Column("browser", sa.String(length=50), nullable=True),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_referral_analytics_link_created",
        "referral_analytics",
        ["link_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_referral_analytics_event_type", "referral_analytics", ["event_type"], unique=False
    )
    op.create_index(
        "ix_referral_analytics_created_at", "referral_analytics", ["created_at"], unique=False
    )

    op.create_table(
        "referrals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("influencer_id", sa.String(length=36), nullable=False),
        sa.Column(
            "referral_link_id",
            sa.String(length=36),
            sa.ForeignKey("referral_links.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referred_user_id", sa.String(length=36), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("discord_id", sa.String(length=64), nullable=True),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("source_platform", sa.String(length=20), nullable=False),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("influencer_id", "email", name="uq_referrals_influencer_email"),
    )
    op.create_index("ix_referrals_influencer_id", "referrals", ["influencer_id"], unique=False)
    op.create_index("idx_referrals_status", "referrals", ["status"], unique=False)
    op.create_index("idx_referrals_link", "referrals", ["referral_link_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_referrals_link", table_name="referrals")
    op.drop_index("idx_referrals_status", table_name="referrals")
    op.drop_index("ix_referrals_influencer_id", table_name="referrals")
    op.drop_table("referrals")

    op.drop_index("ix_referral_analytics_created_at", table_name="referral_analytics")
    op.drop_index("idx_referral_analytics_event_type", table_name="referral_analytics")
    op.drop_index("idx_referral_analytics_link_created", table_name="referral_analytics")
    op.drop_table("referral_analytics")

    op.drop_index("idx_referral_links_created", table_name="referral_links")
    op.drop_index("idx_referral_links_influencer", table_name="referral_links")
    op.drop_index("ix_referral_links_referral_code", table_name="referral_links")
    op.drop_table("referral_links")

    op.drop_index("idx_bots_status", table_name="bots")
    op.drop_index("idx_bots_client", table_name="bots")
    op.drop_table("bots")

    op.drop_index("idx_clients_status", table_name="clients")
    op.drop_table("clients")

    op.drop_index("idx_user_profiles_role", table_name="user_profiles")
    op.drop_table("user_profiles")
