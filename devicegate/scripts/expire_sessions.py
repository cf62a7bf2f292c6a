"""
Inactivity sweep — revokes sessions idle beyond the configured window.

Usage:
    uv run python -m devicegate.scripts.expire_sessions
    uv run python -m devicegate.scripts.expire_sessions --dry-run

One-shot: run it from cron (or any scheduler).  Only the local rows are
revoked; the IdP expires its own idle sessions.
"""

import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from devicegate.core.config import settings
from devicegate.models.base import utcnow
from devicegate.services import session_service, settings_service


async def expire_sessions(dry_run: bool = False) -> int:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    try:
        async with session_factory() as session:
            window = await settings_service.get_inactivity_window(session)
            cutoff = utcnow() - window
            count = await session_service.expire_inactive(cutoff, session)
            if dry_run:
                await session.rollback()
            else:
                await session.commit()
    finally:
        await engine.dispose()

    print(f"\n{'Would revoke' if dry_run else 'Revoked'} {count} session(s) idle since {cutoff:%Y-%m-%d %H:%M} UTC\n")
    return count


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1].strip())
    parser.add_argument("--dry-run", action="store_true", help="count without committing")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    asyncio.run(expire_sessions(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
