from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.sync.base import ResourceSync
from models import ResourceName
from schemas.listing import OpenHouseRecord


class OpenHouseSync(ResourceSync):
    """Open house schedule; rows may reference listings not yet synced"""

    resource = ResourceName.OPEN_HOUSE
    record_model = OpenHouseRecord
    record_path = "OpenHouse"
    key_field = "OpenHouseKey"

    async def persist_record(self, writer: UpsertWriter, record: OpenHouseRecord) -> bool:
        return await writer.upsert_open_house(record)
