#!/usr/bin/env python3
"""Seed a local database with demo influencer, client, bot and link data."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.database import Base, Client, ReferralLink, UserProfile
from virion.services.bots import create_bot
from virion.services.database import async_session, engine
from virion.services.errors import VirionError
from virion.services.links import create_link

logger = logging.getLogger(__name__)

DEMO_INFLUENCER_EMAIL = "demo.influencer@virionlabs.com"
DEMO_CLIENT_NAME = "Demo Gaming Co"
SAMPLE_LINKS = (
    {
        "title": "Gaming Setup Tour 2024",
        "description": "Complete gaming setup breakdown with all my favorite peripherals",
        "platform": "TikTok",
        "original_url": "https://bestbuy.com/site/gaming-chair-deluxe",
    },
    {
        "title": "Best Skincare Routine 2024",
        "description": "The skincare products that changed my life",
        "platform": "Instagram",
        "original_url": "https://sephora.com/product/retinol-serum-P12345",
    },
    {
        "title": "Summer Tech Gadgets Review",
        "description": "My honest review of the latest tech gadgets for summer",
        "platform": "YouTube",
        "original_url": "https://amazon.com/dp/B08N5WRWNW",
    },
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Insert demo data (skips what already exists)")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create tables directly instead of relying on alembic",
    )
    return parser.parse_args(argv)


async def _get_or_create_influencer(db: AsyncSession) -> UserProfile:
    influencer = await db.scalar(
        select(UserProfile).where(UserProfile.email == DEMO_INFLUENCER_EMAIL)
    )
    if influencer is None:
        influencer = UserProfile(email=DEMO_INFLUENCER_EMAIL, full_name="Demo Influencer", role="influencer")
        db.add(influencer)
        await db.commit()
        await db.refresh(influencer)
        print(f"Created influencer {influencer.email}")
    return influencer


async def _get_or_create_client(db: AsyncSession) -> Client:
    client = await db.scalar(select(Client).where(Client.name == DEMO_CLIENT_NAME))
    if client is None:
        client = Client(name=DEMO_CLIENT_NAME, industry="Gaming", contact_email="ops@demogaming.example")
        db.add(client)
        await db.commit()
        await db.refresh(client)
        await create_bot(db, client_id=client.id, name="Demo Bot", template="standard")
        print(f"Created client {client.name} with one bot")
    return client


async def seed(db: AsyncSession) -> int:
    influencer = await _get_or_create_influencer(db)
    await _get_or_create_client(db)

    existing = await db.scalar(
        select(ReferralLink.id).where(ReferralLink.influencer_id == influencer.id).limit(1)
    )
    if existing is not None:
        print("Sample links already exist, skipping")
        return 0

    for sample in SAMPLE_LINKS:
        link = await create_link(db, influencer_id=influencer.id, **sample)
        print(f"Created link {link.referral_code}")
    return len(SAMPLE_LINKS)


async def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    try:
        async with async_session() as db:
            created = await seed(db)
    except VirionError as exc:
        print(f"Seed failed: {exc.message}")
        return 1
    print(f"Seeded {created} link(s)")
    return 0


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-8s [%(name)s] %(message)s")
    return asyncio.run(run())


if __name__ == "__main__":
    sys.exit(main())
