#!/usr/bin/env python3
"""Rebuild referral link counters from the analytics event log."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from virion.services.database import async_session
from virion.services.errors import VirionError
from virion.services.links import reconcile_counters

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute link clicks/conversions/earnings")
    parser.add_argument("--link-id", help="Only reconcile this referral link")
    return parser.parse_args(argv)


async def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        async with async_session() as db:
            corrected = await reconcile_counters(db, args.link_id)
    except VirionError as exc:
        print(f"Reconcile failed: {exc.message}")
        return 1

    if not corrected:
        print("All link counters match the event log")
        return 0
    for row in corrected:
        before, after = row["before"], row["after"]
        print(
            f"{row['referral_code']}: clicks {before['clicks']} -> {after['clicks']}, "
            f"conversions {before['conversions']} -> {after['conversions']}, "
            f"earnings {before['earnings']:.2f} -> {after['earnings']:.2f}"
        )
    print(f"Reconciled {len(corrected)} link(s)")
    return 0


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-8s [%(name)s] %(message)s")
    return asyncio.run(run())


if __name__ == "__main__":
    sys.exit(main())
