"""
Property sync: listings with their media, rooms and unit types
"""

from typing import List

from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.sync.base import ResourceSync
from models import ResourceName
from schemas.listing import PropertyRecord


class PropertySync(ResourceSync):
    """Viewable listings, expanded with Media, Rooms and UnitTypes"""

    resource = ResourceName.PROPERTY
    record_model = PropertyRecord
    record_path = "Property"
    key_field = "ListingKey"
    expand = "Media,Rooms,UnitTypes"

    def base_filters(self) -> List[str]:
        return super().base_filters() + ["MlgCanView eq true"]

    async def persist_record(self, writer: UpsertWriter, record: PropertyRecord) -> bool:
        return await writer.upsert_listing(record)
