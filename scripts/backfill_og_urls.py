#!/usr/bin/env python3
"""
Backfill OG data for Roast Me Characters

Recomputes the composite OG image URL and share metadata for completed
characters that are missing them (rows created before the composite card
existed, or whose API base URL changed).

Usage:
    python scripts/backfill_og_urls.py --dry-run
    python scripts/backfill_og_urls.py --limit 500
    python scripts/backfill_og_urls.py --all --api-url https://api.roastme.example
"""

import argparse
import asyncio
import sys
from typing import Optional

from sqlalchemy import or_, select
import structlog

from roastme.core.database import AsyncSessionLocal
from roastme.models.db import Character
from roastme.models.dto import FeatureAnalysis, GenerationStatus, RoastContent
from roastme.services.og import build_composite_og_url, generate_og_metadata

logger = structlog.get_logger()


def needs_backfill(character: Character, api_url: Optional[str]) -> bool:
    if not character.og_image_url or not character.og_title:
        return True
    if api_url and not character.og_image_url.startswith(f"{api_url.rstrip('/')}/v1/og?"):
        return True
    return False


def backfill_character(character: Character, api_url: Optional[str]) -> bool:
    """Recompute OG fields in place. False when the row lacks the data to do it."""
    if not character.ai_features_json or not character.model_url:
        return False

    analysis = FeatureAnalysis.model_validate(character.ai_features_json)
    roast_data = (character.generation_params or {}).get("roast_content")
    roast = RoastContent.model_validate(roast_data) if roast_data else None

    og = generate_og_metadata(analysis, roast)
    character.og_title = og.title
    character.og_description = og.description
    character.og_image_alt = og.image_alt
    character.og_image_url = build_composite_og_url(
        character.original_image_url,
        character.model_url,
        analysis.character_style,
        [f.feature_name for f in analysis.features],
        punchline=roast.punchline if roast else None,
        base_url=api_url,
    )
    return True


async def backfill(limit: int, recompute_all: bool, api_url: Optional[str], dry_run: bool) -> dict:
    stats = {"scanned": 0, "updated": 0, "skipped": 0}

    async with AsyncSessionLocal() as session:
        query = select(Character).where(Character.status == GenerationStatus.completed.value)
        if not recompute_all and not api_url:
            query = query.where(
                or_(Character.og_image_url.is_(None), Character.og_title.is_(None))
            )
        result = await session.execute(query.order_by(Character.created_at).limit(limit))

        for character in result.scalars().all():
            stats["scanned"] += 1
            if not recompute_all and not needs_backfill(character, api_url):
                continue
            if not backfill_character(character, api_url):
                logger.warning("Missing analysis or image, skipped", character_id=character.id)
                stats["skipped"] += 1
                continue
            stats["updated"] += 1
            logger.info("OG data recomputed", character_id=character.id, dry_run=dry_run)

        if dry_run:
            await session.rollback()
        else:
            await session.commit()

    return stats


async def main():
    parser = argparse.ArgumentParser(description="Backfill OG URLs and metadata")
    parser.add_argument("--limit", type=int, default=1000, help="Maximum characters to scan")
    parser.add_argument("--all", action="store_true", help="Recompute every completed character")
    parser.add_argument("--api-url", type=str, default=None, help="Public API base URL for OG links")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    args = parser.parse_args()

    stats = await backfill(args.limit, args.all, args.api_url, args.dry_run)

    print(f"\n{'=' * 40}")
    print("OG Backfill Summary" + (" (dry run)" if args.dry_run else ""))
    print(f"{'=' * 40}")
    print(f"Scanned: {stats['scanned']}")
    print(f"Updated: {stats['updated']}")
    print(f"Skipped: {stats['skipped']}")

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
