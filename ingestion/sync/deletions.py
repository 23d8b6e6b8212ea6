"""
Deletion sync: listings the upstream flags as no longer viewable.

Absence from a payload never deletes anything; only MlgCanView eq false does.
"""

from typing import List, Optional
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from ingestion.client import CatalogClient
from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.media.storage import ObjectStorage
from ingestion.sync.base import ResourceSync
from models import ResourceName
from schemas.listing import DeletedPropertyRecord

logger = logging.getLogger(__name__)


class PropertyDeletionSync(ResourceSync):
    """
    Removes hidden listings together with their children and rehosted media.

    Rehosted objects are deleted before the rows, so a storage failure
    aborts the page and the listing is retried on the next cycle.
    """

    resource = ResourceName.PROPERTY_DELETIONS
    record_model = DeletedPropertyRecord
    record_path = "Property"
    key_field = "ListingKey"
    select_fields = "ListingKey,ModificationTimestamp"

    def __init__(
        self,
        client: CatalogClient,
        session_maker: async_sessionmaker,
        storage: Optional[ObjectStorage] = None,
        min_properties: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(client, session_maker, **kwargs)
        self.storage = storage
        self.min_properties = (
            min_properties if min_properties is not None else settings.DELETION_MIN_PROPERTIES
        )

    def base_filters(self) -> List[str]:
        return super().base_filters() + ["MlgCanView eq false"]

    async def should_run(self) -> bool:
        if self.min_properties <= 0:
            return True
        async with self.session_maker() as session:
            count = await UpsertWriter(session).count_properties(self.originating_system)
        if count < self.min_properties:
            logger.info(f"Skipping deletion sync - only {count} properties in database")
            return False
        return True

    async def persist_record(self, writer: UpsertWriter, record: DeletedPropertyRecord) -> bool:
        if self.storage is not None:
            await self.storage.delete_listing(self.originating_system, record.listing_key)
        deleted = await writer.delete_property(record.listing_key)
        if deleted:
            logger.info(f"Deleted property {record.listing_key}")
        return deleted
