"""Remove leaked sandbox containers and close out orphaned builds.

Sandbox sessions destroy their container on exit, but a worker killed
mid-build (OOM, deploy, SIGKILL) never reaches that point. This script:
1. Lists containers labelled pagewright.managed=true
2. Removes the ones older than SANDBOX_MAX_AGE_MINUTES
3. Marks builds still in 'building' after the same age as failed

Run: python scripts/cleanup_sandboxes.py [--max-age-minutes 60] [--dry-run]
"""

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path so we can import our modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from apps.api.config import settings
from apps.api.exceptions import BuildAlreadyFinalized
from apps.api.models.build import BuildStatus
from apps.api.repositories import build_repo
from apps.api.services.sandbox import DockerSandboxProvider, reap_orphaned_sandboxes

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(message)s",
)
logger = logging.getLogger(__name__)


async def cleanup(max_age_minutes: int, dry_run: bool = False) -> None:
    provider = DockerSandboxProvider()

    if dry_run:
        cutoff = time.time() - max_age_minutes * 60
        stale = [s for s in await provider.list_managed() if s.created_at < cutoff]
        for sandbox in stale:
            logger.info("Would remove sandbox %s", sandbox.id[:12])
        logger.info("%d sandbox(es) older than %d minutes", len(stale), max_age_minutes)
    else:
        removed = await reap_orphaned_sandboxes(provider, max_age_minutes)
        logger.info("✅ Removed %d sandbox(es)", len(removed))

    engine = create_async_engine(settings.database_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    older_than = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
    async with async_session() as db:
        builds = await build_repo.list_stale_building(db, older_than)
        for build in builds:
            if dry_run:
                logger.info("Would fail build %s (project %s, v%d)", build.id, build.project_id, build.version)
                continue
            try:
                await build_repo.finalize(
                    db, build.id, BuildStatus.FAILED, error="Abandoned: worker exited mid-build"
                )
                logger.info("Failed stale build %s (v%d)", build.id, build.version)
            except BuildAlreadyFinalized:
                logger.info("Build %s finished while we looked at it", build.id)

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--max-age-minutes", type=int, default=settings.sandbox_max_age_minutes)
    parser.add_argument("--dry-run", action="store_true", help="List what would be removed")
    args = parser.parse_args()
    asyncio.run(cleanup(args.max_age_minutes, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
