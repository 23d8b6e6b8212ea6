import logging
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.database import async_session_maker
from core.timeutils import utcnow
from ingestion.client import CatalogClient
from ingestion.events import record_rate_limit_event
from ingestion.media.delay import DelaySetting
from ingestion.media.pipeline import MediaPipeline
from ingestion.media.storage import ObjectStorage
from ingestion.media.tracker import ProblematicEntityTracker
from ingestion.progress import ProgressRecorder
from ingestion.rate_limiter import RateLimiter
from ingestion.sync import (
    MemberSync,
    OfficeSync,
    OpenHouseSync,
    PropertyDeletionSync,
    PropertySync,
    ResourceSync,
)
from models import RateLimitEventType

logger = logging.getLogger(__name__)

_NOT_SET = object()


class SyncScheduler:
    """
    Owns every long-running part of the engine.

    - one interval job per resource sync loop (max_instances=1, coalesce)
    - one interval job for the progress recorder
    - the media pipeline as a long-lived asyncio task

    All catalog API traffic shares one RateLimiter.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        limiter: Optional[RateLimiter] = None,
        client: Optional[CatalogClient] = None,
        storage: Any = _NOT_SET,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.limiter = limiter or RateLimiter(
            "catalog-api",
            min_interval=settings.RATE_LIMIT_MIN_INTERVAL_MS / 1000.0,
            max_per_window=settings.RATE_LIMIT_HOURLY_MAX,
            on_window_exhausted=self._record_hourly_limit,
        )
        self.client = client or CatalogClient(self.limiter)
        self.storage = ObjectStorage.from_settings() if storage is _NOT_SET else storage

        self.syncs: List[ResourceSync] = [
            PropertySync(self.client, self.session_maker),
            PropertyDeletionSync(self.client, self.session_maker, storage=self.storage),
            MemberSync(self.client, self.session_maker),
            OfficeSync(self.client, self.session_maker),
            OpenHouseSync(self.client, self.session_maker),
        ]
        self.tracker = ProblematicEntityTracker(self.session_maker)
        self.delay = DelaySetting(self.session_maker)
        self.pipeline = MediaPipeline(
            self.session_maker,
            storage=self.storage,
            tracker=self.tracker,
            delay=self.delay,
            client=self.client,
        )
        self.progress = ProgressRecorder(self.session_maker)

        self.scheduler = scheduler or AsyncIOScheduler()
        self._media_task: Optional[asyncio.Task] = None
        self.started_at: Optional[datetime] = None

    async def _record_hourly_limit(self, count: int, wait_seconds: float) -> None:
        await record_rate_limit_event(
            self.session_maker,
            RateLimitEventType.HOURLY_LIMIT,
            source=self.limiter.name,
            request_count=count,
            response_body=f"window ceiling reached, waiting {wait_seconds:.0f}s",
        )

    async def run_sync_job(self, sync: ResourceSync) -> Optional[Dict[str, Any]]:
        """Job to run one sync cycle; failures are already stamped on sync_state"""
        try:
            return await sync.run_cycle()
        except Exception as e:
            logger.error(f"Scheduler: {sync.name} sync job failed - {e}")
            return None

    async def run_progress_job(self) -> None:
        try:
            await self.progress.record()
        except Exception as e:
            logger.error(f"Scheduler: progress job failed - {e}")

    async def run_once(self) -> List[Optional[Dict[str, Any]]]:
        """Run every sync loop once in order, then record a snapshot"""
        results = [await self.run_sync_job(sync) for sync in self.syncs]
        await self.run_progress_job()
        return results

    def start(self, run_media: bool = True):
        """Start the scheduler"""
        for sync in self.syncs:
            self.scheduler.add_job(
                self.run_sync_job,
                trigger=IntervalTrigger(minutes=settings.SYNC_INTERVAL_MINUTES),
                args=[sync],
                id=f"sync_{sync.name}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=datetime.now(),
            )
        self.scheduler.add_job(
            self.run_progress_job,
            trigger=IntervalTrigger(minutes=settings.PROGRESS_INTERVAL_MINUTES),
            id="progress_snapshot",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

        if run_media:
            self._media_task = asyncio.create_task(self.pipeline.run(), name="media-pipeline")

        self.started_at = utcnow()
        logger.info(
            f"Sync scheduler started: {len(self.syncs)} resource loops every "
            f"{settings.SYNC_INTERVAL_MINUTES} minutes"
        )

    async def stop(self):
        """Signal every loop, let in-flight pages and downloads finish, then shut down"""
        for sync in self.syncs:
            sync.stop()
        self.pipeline.stop()

        await asyncio.gather(*(sync.wait_idle() for sync in self.syncs))
        await self.pipeline.wait_idle()
        if self._media_task is not None:
            await self._media_task
            self._media_task = None

        # Jobs are idle now, so cancelling pending futures loses nothing
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.client.close()
        logger.info("Sync scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "started_at": self.started_at,
            "loops": {sync.name: sync.phase.value for sync in self.syncs},
            "media_pipeline_running": self._media_task is not None and not self._media_task.done(),
            "storage_configured": self.storage is not None,
            "rate_limiter": self.limiter.stats(),
        }
