from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, ForeignKey, Index, Numeric
)
from sqlalchemy.orm import relationship
from models.base import Base, JSONType
from core.timeutils import utcnow


class Property(Base):
    """
    Canonical listing record keyed by the upstream ListingKey.

    Field Mapping Strategy (RESO → column):
    - ListingKey -> listing_key
    - StandardStatus -> standard_status
    - MlgCanView -> can_view
    - ModificationTimestamp -> modification_timestamp
    - UnparsedAddress -> address_full
    - PublicRemarks -> remarks_public
    - everything else -> raw (JSONB, the complete payload)

    Mutable fields are overwritten from the freshest payload; ``raw`` keeps the
    whole record for forward-compatible backfills and is never queried on.
    """
    __tablename__ = "properties"

    listing_key = Column(String(100), primary_key=True)
    listing_id = Column(String(100), nullable=True)
    originating_system = Column(String(100), nullable=False, index=True)

    standard_status = Column(String(50), nullable=True, index=True)
    property_type = Column(String(100), nullable=True)
    property_sub_type = Column(String(100), nullable=True)
    can_view = Column(Boolean, nullable=False, default=True)

    # Upstream timestamps
    modification_timestamp = Column(DateTime, nullable=False, index=True)
    photos_change_timestamp = Column(DateTime, nullable=True)

    # Pricing
    list_price = Column(Numeric(14, 2), nullable=True)
    original_list_price = Column(Numeric(14, 2), nullable=True)
    close_price = Column(Numeric(14, 2), nullable=True)

    # Structure
    bedrooms_total = Column(Integer, nullable=True)
    bathrooms_total = Column(Integer, nullable=True)
    living_area = Column(Integer, nullable=True)
    year_built = Column(Integer, nullable=True)
    lot_size_acres = Column(Float, nullable=True)

    # Location
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address_full = Column(String(500), nullable=True)
    city = Column(String(100), nullable=True, index=True)
    state_or_province = Column(String(50), nullable=True)
    postal_code = Column(String(20), nullable=True, index=True)
    county_or_parish = Column(String(100), nullable=True)

    remarks_public = Column(Text, nullable=True)
    list_agent_key = Column(String(100), nullable=True)
    list_office_key = Column(String(100), nullable=True)
    photo_count = Column(Integer, nullable=False, default=0)

    raw = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    media = relationship("MediaAsset", back_populates="owner", cascade="all, delete-orphan", passive_deletes=True)
    rooms = relationship("Room", cascade="all, delete-orphan", passive_deletes=True)
    unit_types = relationship("UnitType", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("idx_properties_status_modified", "standard_status", "modification_timestamp"),
    )


class Room(Base):
    """Room sub-record of a listing, keyed by RoomKey"""
    __tablename__ = "rooms"

    room_key = Column(String(150), primary_key=True)
    listing_key = Column(
        String(100), ForeignKey("properties.listing_key", ondelete="CASCADE"), nullable=False, index=True
    )
    room_type = Column(String(100), nullable=True)
    room_level = Column(String(50), nullable=True)
    room_length = Column(Float, nullable=True)
    room_width = Column(Float, nullable=True)
    raw = Column(JSONType, nullable=False, default=dict)


class UnitType(Base):
    """Unit type sub-record of a multi-unit listing, keyed by UnitTypeKey"""
    __tablename__ = "unit_types"

    unit_type_key = Column(String(150), primary_key=True)
    listing_key = Column(
        String(100), ForeignKey("properties.listing_key", ondelete="CASCADE"), nullable=False, index=True
    )
    bedrooms = Column(Integer, nullable=True)
    bathrooms = Column(Float, nullable=True)
    rent_min = Column(Numeric(14, 2), nullable=True)
    rent_max = Column(Numeric(14, 2), nullable=True)
    raw = Column(JSONType, nullable=False, default=dict)
