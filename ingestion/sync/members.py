from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.sync.base import ResourceSync
from models import ResourceName
from schemas.listing import MemberRecord


class MemberSync(ResourceSync):
    """Agent roster"""

    resource = ResourceName.MEMBER
    record_model = MemberRecord
    record_path = "Member"
    key_field = "MemberKey"

    async def persist_record(self, writer: UpsertWriter, record: MemberRecord) -> bool:
        return await writer.upsert_member(record)
