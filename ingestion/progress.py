"""
Periodic progress snapshots and retention cleanup
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import and_, delete, distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.timeutils import utcnow
from models import MediaAsset, ProgressSnapshot, Property, RateLimitEvent, RateLimitEventType

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "Active"


def _not_video():
    return or_(MediaAsset.category.is_(None), MediaAsset.category != "Video")


class ProgressRecorder:
    """
    Writes one immutable ProgressSnapshot per interval.

    Read-only with respect to every other table except the retention purge
    of snapshots and rate-limit events.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        interval: Optional[timedelta] = None,
        retention: Optional[timedelta] = None,
    ):
        self.session_maker = session_maker
        self.interval = interval or timedelta(minutes=settings.PROGRESS_INTERVAL_MINUTES)
        self.retention = retention or timedelta(days=settings.RETENTION_DAYS)

    async def _scalar(self, session: AsyncSession, query) -> int:
        return (await session.execute(query)).scalar_one() or 0

    async def build_snapshot(self, session: AsyncSession, now: datetime) -> ProgressSnapshot:
        since = now - self.interval

        total_properties = await self._scalar(session, select(func.count()).select_from(Property))
        active_properties = await self._scalar(
            session,
            select(func.count()).select_from(Property).where(Property.standard_status == ACTIVE_STATUS),
        )
        total_media = await self._scalar(
            session, select(func.count()).select_from(MediaAsset).where(_not_video())
        )
        downloaded_media = await self._scalar(
            session,
            select(func.count()).select_from(MediaAsset).where(_not_video(), MediaAsset.local_url.isnot(None)),
        )
        missing = and_(_not_video(), MediaAsset.local_url.is_(None), MediaAsset.non_retryable.is_(False))
        missing_media = await self._scalar(session, select(func.count()).select_from(MediaAsset).where(missing))
        properties_with_missing = await self._scalar(
            session, select(func.count(distinct(MediaAsset.listing_key))).where(missing)
        )
        downloads_in_interval = await self._scalar(
            session,
            select(func.count()).select_from(MediaAsset).where(MediaAsset.downloaded_at > since),
        )

        recent_events = (
            await session.execute(
                select(RateLimitEvent.event_type, func.count())
                .where(RateLimitEvent.created_at > since)
                .group_by(RateLimitEvent.event_type)
            )
        ).all()
        event_counts = {event_type: count for event_type, count in recent_events}

        percentage = int(round(downloaded_media * 100 / total_media)) if total_media else 100

        return ProgressSnapshot(
            recorded_at=now,
            total_properties=total_properties,
            active_properties=active_properties,
            total_media=total_media,
            downloaded_media=downloaded_media,
            missing_media=missing_media,
            download_percentage=percentage,
            properties_with_missing_media=properties_with_missing,
            media_downloads_in_interval=downloads_in_interval,
            api_rate_limited=event_counts.get(RateLimitEventType.API_429, 0) > 0,
            cdn_rate_limited=event_counts.get(RateLimitEventType.CDN_429, 0) > 0,
        )

    async def purge(self, session: AsyncSession, now: datetime) -> int:
        cutoff = now - self.retention
        snapshots = await session.execute(
            delete(ProgressSnapshot).where(ProgressSnapshot.recorded_at < cutoff)
        )
        events = await session.execute(
            delete(RateLimitEvent).where(RateLimitEvent.created_at < cutoff)
        )
        return (snapshots.rowcount or 0) + (events.rowcount or 0)

    async def record(self, now: Optional[datetime] = None) -> ProgressSnapshot:
        """Write one snapshot, then purge rows older than the retention window"""
        now = now or utcnow()
        async with self.session_maker() as session:
            snapshot = await self.build_snapshot(session, now)
            session.add(snapshot)
            purged = await self.purge(session, now)
            await session.commit()

        logger.info(
            f"Progress: {snapshot.downloaded_media}/{snapshot.total_media} media "
            f"({snapshot.download_percentage}%), {snapshot.missing_media} missing across "
            f"{snapshot.properties_with_missing_media} listings, "
            f"{snapshot.media_downloads_in_interval} downloaded this interval"
        )
        if purged:
            logger.info(f"Purged {purged} rows past the {self.retention.days}-day retention")
        return snapshot
