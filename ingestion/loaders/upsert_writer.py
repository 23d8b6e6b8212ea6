"""
Idempotent writes of upstream records into the canonical store.

All writes are INSERT ... ON CONFLICT DO UPDATE keyed by the upstream natural
key. PostgreSQL and SQLite share the same statement shape through their
dialect-specific insert constructs.
"""

from typing import Iterable, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import case, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from models import Member, MediaAsset, Office, OpenHouse, Property, Room, UnitType
from schemas.listing import (
    MediaRecord,
    MemberRecord,
    OfficeRecord,
    OpenHouseRecord,
    PropertyRecord,
    RoomRecord,
    UnitTypeRecord,
)
from core.timeutils import utcnow
import logging

logger = logging.getLogger(__name__)


PROPERTY_FIELDS = (
    "listing_id", "originating_system", "standard_status", "property_type",
    "property_sub_type", "can_view", "modification_timestamp", "photos_change_timestamp",
    "list_price", "original_list_price", "close_price", "bedrooms_total",
    "bathrooms_total", "living_area", "year_built", "lot_size_acres", "latitude",
    "longitude", "address_full", "city", "state_or_province", "postal_code",
    "county_or_parish", "remarks_public", "list_agent_key", "list_office_key",
)


class UpsertWriter:
    """
    Load upstream records with idempotent upsert operations.

    Ensures:
    - No duplicate rows on repeated runs
    - A payload that is not newer than the stored row changes nothing
    - Rehosting state of media (local_url, downloaded_at) is never overwritten

    The caller owns the transaction: nothing here commits.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    def _insert(self, model):
        if self.db.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def upsert_property(self, record: PropertyRecord) -> bool:
        """
        Upsert a listing row (children are written separately).

        Returns:
            True if the row was inserted or updated, False for a stale replay
        """
        now = utcnow()
        values = {field: getattr(record, field) for field in PROPERTY_FIELDS}
        values.update(
            listing_key=record.listing_key,
            photo_count=record.photo_count,
            raw=record.raw,
            created_at=now,
            updated_at=now,
        )

        stmt = self._insert(Property).values(**values)
        set_ = {field: stmt.excluded[field] for field in PROPERTY_FIELDS}
        set_.update(photo_count=stmt.excluded.photo_count, raw=stmt.excluded.raw, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["listing_key"],
            set_=set_,
            where=Property.__table__.c.modification_timestamp < stmt.excluded.modification_timestamp,
        ).returning(Property.__table__.c.listing_key)

        result = await self.db.execute(stmt)
        return result.first() is not None

    async def upsert_media(self, listing_key: str, items: Iterable[MediaRecord]) -> int:
        """
        Upsert media metadata for a listing.

        source_url and descriptive fields follow the payload; a newer
        modification_ts re-arms an asset previously marked non-retryable.
        """
        count = 0
        table = MediaAsset.__table__
        for item in items:
            stmt = self._insert(MediaAsset).values(
                media_key=item.media_key,
                listing_key=listing_key,
                source_url=item.source_url,
                modification_ts=item.modification_ts,
                category="Video" if item.is_video else item.category,
                order_sequence=item.order_sequence,
                caption=item.caption,
                width=item.width,
                height=item.height,
                non_retryable=False,
                raw=item.raw,
                created_at=utcnow(),
            )
            newer = stmt.excluded.modification_ts > table.c.modification_ts
            stmt = stmt.on_conflict_do_update(
                index_elements=["media_key"],
                set_={
                    "listing_key": stmt.excluded.listing_key,
                    "source_url": stmt.excluded.source_url,
                    "modification_ts": stmt.excluded.modification_ts,
                    "category": stmt.excluded.category,
                    "order_sequence": stmt.excluded.order_sequence,
                    "caption": stmt.excluded.caption,
                    "width": stmt.excluded.width,
                    "height": stmt.excluded.height,
                    "raw": stmt.excluded.raw,
                    "non_retryable": case((newer, False), else_=table.c.non_retryable),
                    "last_error": case((newer, None), else_=table.c.last_error),
                },
                where=stmt.excluded.modification_ts >= table.c.modification_ts,
            )
            await self.db.execute(stmt)
            count += 1
        return count

    async def upsert_rooms(self, listing_key: str, rooms: Iterable[RoomRecord]) -> int:
        count = 0
        for idx, room in enumerate(rooms):
            stmt = self._insert(Room).values(
                room_key=room.room_key or f"{listing_key}-room-{idx}",
                listing_key=listing_key,
                room_type=room.room_type,
                room_level=room.room_level,
                room_length=room.room_length,
                room_width=room.room_width,
                raw=room.raw,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["room_key"],
                set_={
                    "room_type": stmt.excluded.room_type,
                    "room_level": stmt.excluded.room_level,
                    "room_length": stmt.excluded.room_length,
                    "room_width": stmt.excluded.room_width,
                    "raw": stmt.excluded.raw,
                },
            )
            await self.db.execute(stmt)
            count += 1
        return count

    async def upsert_unit_types(self, listing_key: str, unit_types: Iterable[UnitTypeRecord]) -> int:
        count = 0
        for idx, unit in enumerate(unit_types):
            stmt = self._insert(UnitType).values(
                unit_type_key=unit.unit_type_key or f"{listing_key}-unit-{idx}",
                listing_key=listing_key,
                bedrooms=unit.bedrooms,
                bathrooms=unit.bathrooms,
                rent_min=unit.rent_min,
                rent_max=unit.rent_max,
                raw=unit.raw,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["unit_type_key"],
                set_={
                    "bedrooms": stmt.excluded.bedrooms,
                    "bathrooms": stmt.excluded.bathrooms,
                    "rent_min": stmt.excluded.rent_min,
                    "rent_max": stmt.excluded.rent_max,
                    "raw": stmt.excluded.raw,
                },
            )
            await self.db.execute(stmt)
            count += 1
        return count

    async def upsert_listing(self, record: PropertyRecord) -> bool:
        """Upsert a listing with its media, rooms and unit types"""
        applied = await self.upsert_property(record)
        if not applied:
            logger.debug(f"Skipped stale replay of listing {record.listing_key}")
            return False
        await self.upsert_media(record.listing_key, record.media)
        await self.upsert_rooms(record.listing_key, record.rooms)
        await self.upsert_unit_types(record.listing_key, record.unit_types)
        return True

    async def upsert_member(self, record: MemberRecord) -> bool:
        stmt = self._insert(Member).values(
            member_key=record.member_key,
            member_full_name=record.member_full_name,
            member_email=record.member_email,
            office_key=record.office_key,
            originating_system=record.originating_system,
            modification_timestamp=record.modification_timestamp,
            raw=record.raw,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["member_key"],
            set_={
                "member_full_name": stmt.excluded.member_full_name,
                "member_email": stmt.excluded.member_email,
                "office_key": stmt.excluded.office_key,
                "originating_system": stmt.excluded.originating_system,
                "modification_timestamp": stmt.excluded.modification_timestamp,
                "raw": stmt.excluded.raw,
                "updated_at": stmt.excluded.updated_at,
            },
            where=Member.__table__.c.modification_timestamp < stmt.excluded.modification_timestamp,
        ).returning(Member.__table__.c.member_key)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def upsert_office(self, record: OfficeRecord) -> bool:
        stmt = self._insert(Office).values(
            office_key=record.office_key,
            office_name=record.office_name,
            office_phone=record.office_phone,
            originating_system=record.originating_system,
            modification_timestamp=record.modification_timestamp,
            raw=record.raw,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["office_key"],
            set_={
                "office_name": stmt.excluded.office_name,
                "office_phone": stmt.excluded.office_phone,
                "originating_system": stmt.excluded.originating_system,
                "modification_timestamp": stmt.excluded.modification_timestamp,
                "raw": stmt.excluded.raw,
                "updated_at": stmt.excluded.updated_at,
            },
            where=Office.__table__.c.modification_timestamp < stmt.excluded.modification_timestamp,
        ).returning(Office.__table__.c.office_key)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def upsert_open_house(self, record: OpenHouseRecord) -> bool:
        stmt = self._insert(OpenHouse).values(
            open_house_key=record.open_house_key,
            listing_key=record.listing_key,
            start_time=record.start_time,
            end_time=record.end_time,
            remarks=record.remarks,
            modification_timestamp=record.modification_timestamp,
            raw=record.raw,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["open_house_key"],
            set_={
                "listing_key": stmt.excluded.listing_key,
                "start_time": stmt.excluded.start_time,
                "end_time": stmt.excluded.end_time,
                "remarks": stmt.excluded.remarks,
                "modification_timestamp": stmt.excluded.modification_timestamp,
                "raw": stmt.excluded.raw,
                "updated_at": stmt.excluded.updated_at,
            },
            where=OpenHouse.__table__.c.modification_timestamp < stmt.excluded.modification_timestamp,
        ).returning(OpenHouse.__table__.c.open_house_key)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def refresh_media_urls(self, listing_key: str, items: Iterable[MediaRecord]) -> int:
        """Overwrite source URLs of known media with freshly signed ones"""
        updated = 0
        for item in items:
            if not item.source_url:
                continue
            result = await self.db.execute(
                MediaAsset.__table__.update()
                .where(MediaAsset.__table__.c.media_key == item.media_key)
                .where(MediaAsset.__table__.c.listing_key == listing_key)
                .values(source_url=item.source_url)
            )
            updated += result.rowcount or 0
        return updated

    async def delete_property(self, listing_key: str) -> bool:
        """
        Delete a listing and every child row.

        Children are removed explicitly rather than through the FK cascade
        so the behaviour is identical on stores without FK enforcement.
        """
        for model in (MediaAsset, Room, UnitType):
            await self.db.execute(delete(model).where(model.listing_key == listing_key))
        result = await self.db.execute(delete(Property).where(Property.listing_key == listing_key))
        return (result.rowcount or 0) > 0

    async def count_properties(self, originating_system: Optional[str] = None) -> int:
        query = select(func.count()).select_from(Property)
        if originating_system:
            query = query.where(Property.originating_system == originating_system)
        return (await self.db.execute(query)).scalar_one()
