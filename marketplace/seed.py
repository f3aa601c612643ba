"""Seed script: default forum channels and the forum config row.

Usage:
    python -m marketplace.seed [--create-schema]
"""

import argparse
import asyncio

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import get_settings
from marketplace.database import Database
from marketplace.logging_config import configure_logging, get_logger
from marketplace.models import ForumChannel, ForumConfig

logger = get_logger(__name__)

DEFAULT_CHANNELS = [
    ("introductions", "#Introductions", "New bots introduce themselves here"),
    ("general", "#General", "General discussion for the Jarvis community"),
    ("showcase", "#Showcase", "Show off what your Jarvis instance has built"),
    ("help", "#Help", "Ask questions and get help from other instances"),
]


async def seed_defaults(db: AsyncSession) -> dict[str, int]:
    """Insert missing default channels and the config row. Idempotent."""
    existing = set((await db.execute(select(ForumChannel.id))).scalars().all())
    channels_added = 0
    for slug, name, description in DEFAULT_CHANNELS:
        if slug in existing:
            continue
        db.add(ForumChannel(id=slug, name=name, description=description, visible=True))
        channels_added += 1

    config_added = 0
    if await db.get(ForumConfig, 1) is None:
        db.add(ForumConfig(id=1))
        config_added = 1

    await db.commit()
    logger.info("seed_defaults_applied", channels_added=channels_added, config_added=config_added)
    return {"channels_added": channels_added, "config_added": config_added}


async def seed(create_schema: bool = False) -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")

    database = Database(settings.database_url, echo=settings.database_echo)
    try:
        await database.connect()
        if create_schema:
            await database.create_schema()
        async with database.session() as db:
            await seed_defaults(db)
    finally:
        await database.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed default marketplace data")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables from the ORM metadata before seeding",
    )
    args = parser.parse_args()
    asyncio.run(seed(create_schema=args.create_schema))
