"""
Concurrent media download pipeline.

Selects media that has not been rehosted yet, downloads it from the (signed,
expiring) source URL and stores it in object storage. Listings that keep
failing are handed to the problematic-entity tracker, which removes them from
future selections until their cooldown expires.

Pass structure:
    candidates -> asyncio.Queue -> N workers -> storage -> local_url

Error handling per asset:
- RateLimited (source host, catalog API during URL refresh, object store):
  audit event, tracker escalation, owner skipped for the rest of the pass,
  and the whole pipeline paused (Retry-After when given, else 60s for the
  media host and object store, 30min for the catalog API)
- ExpiredMediaUrlError: one URL refresh per listing per pass through the
  rate-limited catalog client; a failed refresh is reused by sibling assets
- PermanentAssetError: asset marked non_retryable
- transient errors: retried with capped exponential backoff, then one tracker
  failure; an owner that reaches cooldown is skipped for the rest of the pass
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx
from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ExpiredMediaUrlError,
    PermanentAssetError,
    RateLimited,
    ResourceNotFoundError,
    SyncEngineError,
    TransientUpstreamError,
)
from core.timeutils import utcnow
from ingestion.client import CatalogClient
from ingestion.events import record_from_exception
from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.media.delay import DelaySetting
from ingestion.media.storage import ObjectStorage, extension_for
from ingestion.media.tracker import ProblematicEntityTracker, eligibility_clause
from models import MediaAsset, ProblemStatus, Property
from schemas.listing import MediaRecord

logger = logging.getLogger(__name__)

EVENT_SOURCE = "media_pipeline"


@dataclass
class MediaCandidate:
    media_key: str
    listing_key: str
    source_url: str
    order_sequence: Optional[int]
    originating_system: str


@dataclass
class PassState:
    """Bookkeeping shared by the workers of one pass"""
    throttled_owners: Set[str] = field(default_factory=set)
    excluded_owners: Set[str] = field(default_factory=set)
    refreshed_urls: Dict[str, Dict[str, str]] = field(default_factory=dict)
    refresh_failures: Dict[str, SyncEngineError] = field(default_factory=dict)
    aborted: bool = False
    downloaded: int = 0
    failed: int = 0
    permanent: int = 0
    rate_limited: int = 0
    skipped: int = 0


class MediaPipeline:
    """
    Long-running media rehosting loop.

    Attributes:
        workers: Concurrent download workers per pass (default: 5)
        batch_size: Candidates selected per pass (default: 200)
        max_attempts: Attempts per asset for transient failures (default: 3)
        idle_seconds: Sleep when there is nothing to download (default: 300)
        cdn_pause: Pipeline-wide pause after media host throttling (default: 60)
        api_pause: Pipeline-wide pause after catalog throttling during a URL refresh (default: 1800)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        storage: Optional[ObjectStorage],
        tracker: ProblematicEntityTracker,
        delay: DelaySetting,
        client: CatalogClient,
        http_client: Optional[httpx.AsyncClient] = None,
        workers: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_base: Optional[float] = None,
        retry_max: Optional[float] = None,
        idle_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        cdn_pause: Optional[float] = None,
        api_pause: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_maker = session_maker
        self.storage = storage
        self.tracker = tracker
        self.delay = delay
        self.client = client
        self.workers = workers or settings.MEDIA_WORKERS
        self.batch_size = batch_size or settings.MEDIA_BATCH_SIZE
        self.max_attempts = max_attempts or settings.MEDIA_MAX_ATTEMPTS
        self.retry_base = retry_base if retry_base is not None else settings.MEDIA_RETRY_BASE_SECONDS
        self.retry_max = retry_max if retry_max is not None else settings.MEDIA_RETRY_MAX_SECONDS
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.MEDIA_IDLE_SECONDS
        self.timeout = timeout or settings.MEDIA_TIMEOUT_SECONDS
        self.cdn_pause = cdn_pause if cdn_pause is not None else settings.MEDIA_CDN_PAUSE_SECONDS
        self.api_pause = api_pause if api_pause is not None else settings.MEDIA_API_PAUSE_SECONDS
        self._http = http_client
        self._owns_http = http_client is None
        self._sleep = sleep
        self._clock = clock
        self._paused_until: Optional[float] = None

        self.stop_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def stop(self) -> None:
        self.stop_event.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _wait_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def pause_remaining(self) -> float:
        """Seconds left on the pipeline-wide pause that follows throttling"""
        if self._paused_until is None:
            return 0.0
        return max(0.0, self._paused_until - self._clock())

    def _pause(self, error: RateLimited) -> float:
        if error.retry_after is not None:
            seconds = float(error.retry_after)
        elif error.source == "cdn":
            seconds = self.cdn_pause
        else:
            seconds = self.api_pause
        until = self._clock() + seconds
        if self._paused_until is None or until > self._paused_until:
            self._paused_until = until
        return seconds

    async def run(self) -> None:
        """Run passes until stopped"""
        if self.storage is None:
            logger.warning("Object storage not configured - media pipeline not started")
            return

        logger.info(f"Media pipeline started with {self.workers} workers")
        try:
            while not self.stop_event.is_set():
                try:
                    stats = await self.run_pass()
                except Exception as e:
                    logger.error(f"Media pass failed: {e}", exc_info=True)
                    await self._wait_or_stop(min(self.idle_seconds, 30))
                    continue

                if stats["paused_seconds"] > 0:
                    logger.info(f"Media work paused for {stats['paused_seconds']:.0f}s after throttling")
                    await self._wait_or_stop(stats["paused_seconds"])
                elif stats["candidates"] == 0 or stats["aborted"]:
                    logger.info(f"No media to download, sleeping {self.idle_seconds}s")
                    await self._wait_or_stop(self.idle_seconds)
        finally:
            await self.close()
            logger.info("Media pipeline stopped")

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def select_candidates(self, limit: Optional[int] = None) -> List[MediaCandidate]:
        """Missing, retryable, non-video media whose owner is eligible now"""
        now = utcnow()
        query = (
            select(
                MediaAsset.media_key,
                MediaAsset.listing_key,
                MediaAsset.source_url,
                MediaAsset.order_sequence,
                Property.originating_system,
            )
            .join(Property, Property.listing_key == MediaAsset.listing_key)
            .where(
                MediaAsset.local_url.is_(None),
                MediaAsset.non_retryable.is_(False),
                MediaAsset.source_url.isnot(None),
                or_(MediaAsset.category.is_(None), MediaAsset.category != "Video"),
                eligibility_clause(MediaAsset.listing_key, now),
            )
            .order_by(
                Property.modification_timestamp.desc(),
                MediaAsset.listing_key,
                MediaAsset.order_sequence,
            )
            .limit(limit or self.batch_size)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(query)).all()
        return [
            MediaCandidate(
                media_key=row.media_key,
                listing_key=row.listing_key,
                source_url=row.source_url,
                order_sequence=row.order_sequence,
                originating_system=row.originating_system,
            )
            for row in rows
        ]

    async def run_pass(self) -> Dict[str, Any]:
        """Select one batch of candidates and drain it with the worker pool"""
        self._idle.clear()
        try:
            state = PassState()
            if self.pause_remaining() > 0:
                return self._summary(0, state)
            candidates = await self.select_candidates()
            if not candidates:
                return self._summary(0, state)

            logger.info(f"Media pass: {len(candidates)} candidates")
            queue: asyncio.Queue = asyncio.Queue()
            for candidate in candidates:
                queue.put_nowait(candidate)

            workers = [
                asyncio.create_task(self._worker(queue, state), name=f"media-worker-{i}")
                for i in range(min(self.workers, len(candidates)))
            ]
            await asyncio.gather(*workers)

            summary = self._summary(len(candidates), state)
            logger.info(
                f"Media pass completed. Downloaded: {state.downloaded}, failed: {state.failed}, "
                f"permanent: {state.permanent}, rate limited: {state.rate_limited}, skipped: {state.skipped}"
            )
            return summary
        finally:
            self._idle.set()

    def _summary(self, candidates: int, state: PassState) -> Dict[str, Any]:
        return {
            "candidates": candidates,
            "downloaded": state.downloaded,
            "failed": state.failed,
            "permanent": state.permanent,
            "rate_limited": state.rate_limited,
            "skipped": state.skipped,
            "throttled_owners": sorted(state.throttled_owners),
            "aborted": state.aborted,
            "paused_seconds": self.pause_remaining(),
        }

    async def _worker(self, queue: asyncio.Queue, state: PassState) -> None:
        # Stop and pause are checked between assets; the rest of the queue is dropped
        while not self.stop_event.is_set() and not state.aborted and self.pause_remaining() <= 0:
            try:
                candidate = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self.process(candidate, state)

    # ------------------------------------------------------------------
    # Asset
    # ------------------------------------------------------------------

    async def process(self, candidate: MediaCandidate, state: PassState) -> None:
        if candidate.listing_key in state.throttled_owners or candidate.listing_key in state.excluded_owners:
            state.skipped += 1
            return

        try:
            body, content_type = await self._fetch_with_retry(candidate, state)
            ext = extension_for(content_type, candidate.source_url)
            key = self.storage.build_key(
                candidate.originating_system, candidate.listing_key, candidate.order_sequence, ext
            )
            local_url = await self.storage.put_object(key, body, content_type)
            if await self._mark_downloaded(candidate.media_key, local_url):
                state.downloaded += 1
            await self.tracker.record_success(candidate.listing_key)
            await self._sleep(await self.delay.get_seconds())

        except RateLimited as e:
            state.throttled_owners.add(candidate.listing_key)
            state.rate_limited += 1
            entity = await self.tracker.record_rate_limit(
                candidate.listing_key, notes=f"{e.source} throttled {candidate.media_key}"
            )
            await record_from_exception(
                self.session_maker,
                e,
                source=EVENT_SOURCE,
                cooldown_until=entity.cooldown_until,
                entity_key=candidate.listing_key,
            )
            pause = self._pause(e)
            logger.warning(
                f"Throttled ({e.source}) on {candidate.media_key}; "
                f"skipping listing {candidate.listing_key}, pausing media work for {pause:.0f}s"
            )

        except (PermanentAssetError, ResourceNotFoundError) as e:
            state.permanent += 1
            await self._mark_non_retryable(candidate.media_key, e.message)

        except AuthenticationError as e:
            state.aborted = True
            logger.error(f"Catalog authentication failed, aborting media pass: {e.message}")

        except (SyncEngineError, SQLAlchemyError) as e:
            state.failed += 1
            message = e.message if isinstance(e, SyncEngineError) else str(e)
            logger.warning(f"Media {candidate.media_key} failed: {message}")
            entity = await self.tracker.record_failure(candidate.listing_key, error=message[:500])
            if entity.status in (ProblemStatus.COOLDOWN, ProblemStatus.PERMANENT_SKIP):
                state.excluded_owners.add(candidate.listing_key)
                logger.info(f"Listing {candidate.listing_key} is {entity.status.value}; skipping its remaining media")

    async def _fetch_with_retry(
        self, candidate: MediaCandidate, state: PassState
    ) -> Tuple[bytes, Optional[str]]:
        url = candidate.source_url
        refreshed = False

        for attempt in range(self.max_attempts):
            try:
                return await self._download(url, candidate)
            except ExpiredMediaUrlError:
                if refreshed:
                    raise
                refreshed = True
                fresh = await self._refresh_url(candidate, state)
                if not fresh:
                    raise PermanentAssetError(
                        "Media no longer listed upstream",
                        context={"media_key": candidate.media_key, "listing_key": candidate.listing_key},
                    )
                url = fresh
            except TransientUpstreamError:
                if attempt >= self.max_attempts - 1:
                    raise
                delay = min(self.retry_base * (2 ** attempt), self.retry_max)
                logger.debug(f"Retrying {candidate.media_key} in {delay}s (attempt {attempt + 1})")
                await self._sleep(delay)

        # Attempts used up by an expired URL followed by transient errors
        return await self._download(url, candidate)

    async def _download(self, url: str, candidate: MediaCandidate) -> Tuple[bytes, Optional[str]]:
        context = {"media_key": candidate.media_key, "listing_key": candidate.listing_key}
        try:
            response = await self._get_http().get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientUpstreamError("Media download timeout", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise TransientUpstreamError("Media download network error", context=context, original_exception=e)

        status = response.status_code
        context["status_code"] = status

        if status == 429:
            retry_after = response.headers.get("retry-after", "")
            raise RateLimited(
                "Media host rate limit hit",
                source="cdn",
                context=context,
                endpoint=url.split("?", 1)[0],
                entity_key=candidate.listing_key,
                retry_after=int(retry_after) if retry_after.isdigit() else None,
                response_body=response.text[:1000],
            )
        if status in (400, 403):
            raise ExpiredMediaUrlError("Media URL expired or rejected", context=context)
        if status in (404, 410):
            raise PermanentAssetError(f"Media gone ({status})", context=context)
        if status >= 500:
            raise TransientUpstreamError(f"Media host error {status}", context=context)
        if status != 200:
            raise PermanentAssetError(f"Unexpected media status {status}", context=context)
        if not response.content:
            raise TransientUpstreamError("Empty media body", context=context)

        return response.content, response.headers.get("content-type")

    async def _refresh_url(self, candidate: MediaCandidate, state: PassState) -> Optional[str]:
        """Fetch fresh source URLs for the owner (once per pass) and persist them"""
        failure = state.refresh_failures.get(candidate.listing_key)
        if failure is not None:
            raise failure
        urls = state.refreshed_urls.get(candidate.listing_key)
        if urls is None:
            try:
                payloads = await self.client.fetch_listing_media(candidate.listing_key)
            except (ResourceNotFoundError, TransientUpstreamError) as e:
                state.refresh_failures[candidate.listing_key] = e
                logger.warning(f"Media URL refresh failed for {candidate.listing_key}: {e.message}")
                raise
            records = []
            for payload in payloads:
                try:
                    records.append(MediaRecord.from_payload(payload))
                except ValidationError:
                    logger.debug(f"Ignoring invalid media payload for {candidate.listing_key}")
            async with self.session_maker() as session:
                await UpsertWriter(session).refresh_media_urls(candidate.listing_key, records)
                await session.commit()
            urls = {r.media_key: r.source_url for r in records if r.source_url}
            state.refreshed_urls[candidate.listing_key] = urls
            logger.info(f"Refreshed {len(urls)} media URLs for {candidate.listing_key}")
        return urls.get(candidate.media_key)

    async def _mark_downloaded(self, media_key: str, local_url: str) -> bool:
        """Set local_url exactly once; a concurrent winner keeps its value"""
        async with self.session_maker() as session:
            result = await session.execute(
                update(MediaAsset)
                .where(MediaAsset.media_key == media_key, MediaAsset.local_url.is_(None))
                .values(local_url=local_url, downloaded_at=utcnow(), last_error=None)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def _mark_non_retryable(self, media_key: str, error: str) -> None:
        logger.info(f"Media {media_key} marked non-retryable: {error}")
        async with self.session_maker() as session:
            await session.execute(
                update(MediaAsset)
                .where(MediaAsset.media_key == media_key)
                .values(non_retryable=True, last_error=error[:1000])
            )
            await session.commit()
