"""
Run every resource sync loop once, optionally followed by one media pass
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine
from ingestion.scheduler import SyncScheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_sync(with_media: bool) -> int:
    """Run all loops once; returns the number of loops that did not succeed"""
    scheduler = SyncScheduler()
    failures = 0

    try:
        results = await scheduler.run_once()
        for sync, result in zip(scheduler.syncs, results):
            if result is None:
                failures += 1
                logger.error(f"{sync.name}: failed (see sync_state.error_message)")
            else:
                logger.info(
                    f"{sync.name}: {result['status']}, "
                    f"records={result.get('records_processed', 0)}"
                )

        if with_media:
            if scheduler.storage is None:
                logger.warning("Object storage not configured. Skipping media pass.")
            else:
                stats = await scheduler.pipeline.run_pass()
                logger.info(
                    f"Media pass: {stats['downloaded']}/{stats['candidates']} downloaded, "
                    f"{stats['failed']} failed, {stats['rate_limited']} rate limited"
                )
    finally:
        await scheduler.pipeline.close()
        await scheduler.client.close()
        await engine.dispose()

    return failures


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--media", action="store_true", help="run one media download pass afterwards")
    args = parser.parse_args()

    sys.exit(1 if asyncio.run(run_sync(args.media)) else 0)
