from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.sync.base import ResourceSync
from models import ResourceName
from schemas.listing import OfficeRecord


class OfficeSync(ResourceSync):
    """Brokerage offices"""

    resource = ResourceName.OFFICE
    record_model = OfficeRecord
    record_path = "Office"
    key_field = "OfficeKey"

    async def persist_record(self, writer: UpsertWriter, record: OfficeRecord) -> bool:
        return await writer.upsert_office(record)
