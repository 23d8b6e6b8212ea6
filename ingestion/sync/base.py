"""
Abstract base class for resource sync loops with high-water mark management
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type
from datetime import datetime
import asyncio
import enum
import logging

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.exceptions import CheckpointError, PersistenceError, RateLimited, SyncEngineError
from core.timeutils import EPOCH, parse_timestamp, to_odata, utcnow
from ingestion.client import CatalogClient
from ingestion.events import record_from_exception
from ingestion.loaders.upsert_writer import UpsertWriter
from models import ResourceName, SyncState
from schemas.listing import UpstreamRecord

logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PERSISTING = "persisting"


class ResourceSync(ABC):
    """
    Abstract base class for all resource sync loops.

    Responsibilities:
    - High-water mark management (incremental ingestion)
    - Paged fetch, one transaction per page
    - Failure stamping on the sync state row
    - Cooperative shutdown between pages

    The mark is advanced only after every page of a cycle was persisted.
    """

    resource: ResourceName
    record_model: Type[UpstreamRecord]
    expand: Optional[str] = None
    select_fields: Optional[str] = None
    record_path = "Property"
    key_field = "ListingKey"
    timestamp_field = "ModificationTimestamp"

    def __init__(
        self,
        client: CatalogClient,
        session_maker: async_sessionmaker,
        originating_system: Optional[str] = None,
        batch_size: Optional[int] = None,
    ):
        self.client = client
        self.session_maker = session_maker
        self.originating_system = originating_system or settings.ORIGINATING_SYSTEM
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE

        self.phase = SyncPhase.IDLE
        self.stop_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def name(self) -> str:
        return self.resource.value

    def base_filters(self) -> List[str]:
        system = self.originating_system.replace("'", "''")
        return [f"OriginatingSystemName eq '{system}'"]

    def build_params(self, mark: datetime) -> Dict[str, Any]:
        filters = self.base_filters()
        filters.append(f"{self.timestamp_field} gt {to_odata(mark)}")
        return self.client.build_query(
            filters,
            top=self.batch_size,
            orderby=f"{self.timestamp_field} asc",
            expand=self.expand,
            select=self.select_fields,
        )

    @abstractmethod
    async def persist_record(self, writer: UpsertWriter, record: UpstreamRecord) -> bool:
        """Write one validated record; returns True if the store changed"""
        pass

    async def should_run(self) -> bool:
        """Hook for loops that must skip a cycle (e.g. too little local data)"""
        return True

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    async def get_sync_state(self, session: AsyncSession) -> Optional[SyncState]:
        result = await session.execute(
            select(SyncState).where(SyncState.resource == self.name)
        )
        return result.scalar_one_or_none()

    async def get_high_water_mark(self) -> datetime:
        try:
            async with self.session_maker() as session:
                state = await self.get_sync_state(session)
                return state.high_water_mark if state and state.high_water_mark else EPOCH
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to read high-water mark",
                context={"resource": self.name, "operation": "read"},
                original_exception=e,
            )

    async def _record_success(self, observed: datetime, processed: int) -> datetime:
        now = utcnow()
        try:
            async with self.session_maker() as session:
                state = await self.get_sync_state(session)
                if state is None:
                    state = SyncState(
                        resource=self.name,
                        originating_system=self.originating_system,
                        high_water_mark=EPOCH,
                        total_records_processed=0,
                    )
                    session.add(state)

                # Monotonic: never move the mark backwards
                state.high_water_mark = max(state.high_water_mark or EPOCH, observed)
                state.last_run_at = now
                state.last_success_at = now
                state.last_records_processed = processed
                state.total_records_processed = (state.total_records_processed or 0) + processed
                state.error_message = None
                await session.commit()
                return state.high_water_mark
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to advance high-water mark",
                context={"resource": self.name, "operation": "write"},
                original_exception=e,
            )

    async def _record_failure(self, error: Exception) -> None:
        try:
            async with self.session_maker() as session:
                state = await self.get_sync_state(session)
                if state is None:
                    state = SyncState(
                        resource=self.name,
                        originating_system=self.originating_system,
                        high_water_mark=EPOCH,
                        total_records_processed=0,
                        last_records_processed=0,
                    )
                    session.add(state)
                state.last_failure_at = utcnow()
                state.error_message = str(error)[:2000]
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to record failure for {self.name}: {e}")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def persist_page(
        self, session: AsyncSession, payloads: List[Dict[str, Any]]
    ) -> Tuple[Optional[datetime], int, int]:
        """
        Validate and write one page.

        Returns:
            (max modification time observed, records written, records skipped)
        """
        writer = UpsertWriter(session)
        page_max: Optional[datetime] = None
        written = 0
        skipped = 0

        for payload in payloads:
            ts = parse_timestamp(payload.get(self.timestamp_field))
            if ts is not None and (page_max is None or ts > page_max):
                page_max = ts

            try:
                record = self.record_model.from_payload(payload)
            except ValidationError as e:
                skipped += 1
                logger.warning(
                    f"Skipping invalid {self.name} record "
                    f"{payload.get(self.key_field)}: "
                    f"{e.error_count()} validation errors"
                )
                continue

            if await self.persist_record(writer, record):
                written += 1

        return page_max, written, skipped

    async def run_cycle(self) -> Dict[str, Any]:
        """
        Execute one incremental cycle.

        Returns:
            Dictionary with cycle statistics

        Raises:
            SyncEngineError: Upstream or persistence failure after the
                sync state was stamped with it
        """
        if self.stop_event.is_set():
            return {"resource": self.name, "status": "stopped"}

        self._idle.clear()
        pages = None
        try:
            if not await self.should_run():
                return {"resource": self.name, "status": "skipped"}

            mark = await self.get_high_water_mark()
            logger.info(f"Starting {self.name} sync (high-water mark: {mark.isoformat()})")

            observed = mark
            processed = 0
            skipped = 0
            page_count = 0
            interrupted = False

            self.phase = SyncPhase.FETCHING
            pages = self.client.iter_pages(self.record_path, self.build_params(mark))
            async for payloads in pages:
                self.phase = SyncPhase.PERSISTING
                page_count += 1

                async with self.session_maker() as session:
                    try:
                        page_max, written, page_skipped = await self.persist_page(session, payloads)
                        await session.commit()
                    except SQLAlchemyError as e:
                        await session.rollback()
                        raise PersistenceError(
                            f"Failed to persist {self.name} page {page_count}",
                            context={
                                "operation": "UPSERT",
                                "resource": self.name,
                                "page": page_count,
                                "records": len(payloads),
                            },
                            original_exception=e,
                        )
                    except Exception:
                        await session.rollback()
                        raise

                if page_max is not None and page_max > observed:
                    observed = page_max
                processed += written
                skipped += page_skipped

                if self.stop_event.is_set():
                    interrupted = True
                    break
                self.phase = SyncPhase.FETCHING

            if interrupted:
                logger.info(f"{self.name} sync interrupted by shutdown after {page_count} pages")
                return {
                    "resource": self.name,
                    "status": "interrupted",
                    "records_processed": processed,
                    "pages": page_count,
                }

            new_mark = await self._record_success(observed, processed)
            logger.info(
                f"{self.name} sync completed. Records: {processed}, skipped: {skipped}, "
                f"pages: {page_count}, high-water mark: {new_mark.isoformat()}"
            )
            return {
                "resource": self.name,
                "status": "success",
                "records_processed": processed,
                "records_skipped": skipped,
                "pages": page_count,
                "high_water_mark": new_mark.isoformat(),
            }

        except RateLimited as e:
            logger.warning(f"{self.name} sync throttled by upstream, waiting for next tick")
            await record_from_exception(self.session_maker, e, source=self.name)
            await self._record_failure(e)
            return {"resource": self.name, "status": "rate_limited"}

        except SyncEngineError as e:
            logger.error(
                f"{self.name} sync failed: {e.message}",
                extra={"error_context": e.to_dict()},
            )
            await self._record_failure(e)
            raise

        finally:
            if pages is not None:
                await pages.aclose()
            self.phase = SyncPhase.IDLE
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until no page is in flight"""
        await self._idle.wait()

    def stop(self) -> None:
        self.stop_event.set()
