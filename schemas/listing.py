"""
Pydantic schemas for upstream RESO payloads with validation.

Each record model maps the upstream PascalCase field names (aliases) onto the
canonical column names and keeps the untouched payload in ``raw``.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
import logging
import re

from core.timeutils import parse_timestamp

logger = logging.getLogger(__name__)

VIDEO_URL_PATTERN = re.compile(r"\.(mp4|mov|avi|wmv|flv|webm)(\?|$)", re.IGNORECASE)


def _to_int(value: Any) -> Optional[int]:
    """Round decimal strings/floats the upstream sends for integer fields"""
    if value is None or value == "":
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


class UpstreamRecord(BaseModel):
    """Shared configuration: accept aliases, ignore unmapped upstream fields"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        """Validate a payload and attach it verbatim as the raw bag"""
        record = cls.model_validate(payload)
        record.raw = dict(payload)
        return record

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


def _timestamp(v):
    parsed = parse_timestamp(v)
    if v is not None and parsed is None:
        raise ValueError(f"Invalid timestamp: {v!r}")
    return parsed


class MediaRecord(UpstreamRecord):
    media_key: str = Field(..., alias="MediaKey", min_length=1)
    modification_ts: datetime = Field(..., alias="MediaModificationTimestamp")
    category: Optional[str] = Field(None, alias="MediaCategory")
    order_sequence: Optional[int] = Field(None, alias="Order")
    source_url: Optional[str] = Field(None, alias="MediaURL")
    caption: Optional[str] = Field(None, alias="ShortDescription")
    width: Optional[int] = Field(None, alias="ImageWidth")
    height: Optional[int] = Field(None, alias="ImageHeight")

    parse_timestamps = field_validator("modification_ts", mode="before")(_timestamp)

    @field_validator("order_sequence", "width", "height", mode="before")
    @classmethod
    def coerce_int(cls, v):
        return _to_int(v)

    @property
    def is_video(self) -> bool:
        if self.category == "Video":
            return True
        return bool(self.source_url and VIDEO_URL_PATTERN.search(self.source_url))


class RoomRecord(UpstreamRecord):
    room_key: Optional[str] = Field(None, alias="RoomKey")
    room_type: Optional[str] = Field(None, alias="RoomType")
    room_level: Optional[str] = Field(None, alias="RoomLevel")
    room_length: Optional[float] = Field(None, alias="RoomLength")
    room_width: Optional[float] = Field(None, alias="RoomWidth")


class UnitTypeRecord(UpstreamRecord):
    unit_type_key: Optional[str] = Field(None, alias="UnitTypeKey")
    bedrooms: Optional[int] = Field(None, alias="BedroomsTotal")
    bathrooms: Optional[float] = Field(None, alias="BathroomsTotalInteger")
    rent_min: Optional[Decimal] = Field(None, alias="RentMinimum")
    rent_max: Optional[Decimal] = Field(None, alias="RentMaximum")

    @field_validator("bedrooms", mode="before")
    @classmethod
    def coerce_int(cls, v):
        return _to_int(v)


CHILD_MODELS = (
    ("Media", MediaRecord),
    ("Rooms", RoomRecord),
    ("UnitTypes", UnitTypeRecord),
)


class PropertyRecord(UpstreamRecord):
    """
    Listing payload with expanded Media, Rooms and UnitTypes.

    Ensures:
    - ListingKey and ModificationTimestamp are present
    - Integer fields are rounded from decimal strings
    - Timestamps are normalized to naive UTC
    """

    listing_key: str = Field(..., alias="ListingKey", min_length=1, max_length=100)
    listing_id: Optional[str] = Field(None, alias="ListingId")
    originating_system: str = Field(..., alias="OriginatingSystemName")
    standard_status: Optional[str] = Field(None, alias="StandardStatus")
    property_type: Optional[str] = Field(None, alias="PropertyType")
    property_sub_type: Optional[str] = Field(None, alias="PropertySubType")
    can_view: bool = Field(True, alias="MlgCanView")

    modification_timestamp: datetime = Field(..., alias="ModificationTimestamp")
    photos_change_timestamp: Optional[datetime] = Field(None, alias="PhotosChangeTimestamp")

    list_price: Optional[Decimal] = Field(None, alias="ListPrice", ge=0)
    original_list_price: Optional[Decimal] = Field(None, alias="OriginalListPrice", ge=0)
    close_price: Optional[Decimal] = Field(None, alias="ClosePrice", ge=0)

    bedrooms_total: Optional[int] = Field(None, alias="BedroomsTotal")
    bathrooms_total: Optional[int] = Field(None, alias="BathroomsTotalInteger")
    living_area: Optional[int] = Field(None, alias="LivingArea")
    year_built: Optional[int] = Field(None, alias="YearBuilt")
    lot_size_acres: Optional[float] = Field(None, alias="LotSizeAcres")

    latitude: Optional[float] = Field(None, alias="Latitude")
    longitude: Optional[float] = Field(None, alias="Longitude")
    address_full: Optional[str] = Field(None, alias="UnparsedAddress")
    city: Optional[str] = Field(None, alias="City")
    state_or_province: Optional[str] = Field(None, alias="StateOrProvince")
    postal_code: Optional[str] = Field(None, alias="PostalCode")
    county_or_parish: Optional[str] = Field(None, alias="CountyOrParish")

    remarks_public: Optional[str] = Field(None, alias="PublicRemarks")
    list_agent_key: Optional[str] = Field(None, alias="ListAgentKey")
    list_office_key: Optional[str] = Field(None, alias="ListOfficeKey")

    media: List[MediaRecord] = Field(default_factory=list, alias="Media")
    rooms: List[RoomRecord] = Field(default_factory=list, alias="Rooms")
    unit_types: List[UnitTypeRecord] = Field(default_factory=list, alias="UnitTypes")

    parse_timestamps = field_validator(
        "modification_timestamp", "photos_change_timestamp", mode="before"
    )(_timestamp)

    @field_validator("bedrooms_total", "bathrooms_total", "living_area", "year_built", mode="before")
    @classmethod
    def coerce_int(cls, v):
        return _to_int(v)

    @field_validator("media", "rooms", "unit_types", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return v or []

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        """
        Validate the listing and each child record separately.

        An invalid Media, Rooms or UnitTypes entry is logged and dropped;
        the listing itself is kept.
        """
        children: Dict[str, list] = {}
        for alias, model in CHILD_MODELS:
            valid = []
            for child_payload in payload.get(alias) or []:
                try:
                    valid.append(model.from_payload(child_payload))
                except ValidationError as e:
                    logger.warning(
                        f"Dropping invalid {alias} entry of listing {payload.get('ListingKey')}: "
                        f"{e.error_count()} validation errors"
                    )
            children[alias] = valid

        record = super().from_payload({**payload, **{alias: [] for alias, _ in CHILD_MODELS}})
        record.raw = dict(payload)
        record.media = children["Media"]
        record.rooms = children["Rooms"]
        record.unit_types = children["UnitTypes"]
        return record

    @property
    def photo_count(self) -> int:
        return len(self.media)


class DeletedPropertyRecord(UpstreamRecord):
    """Minimal projection returned by the deletion feed (MlgCanView eq false)"""

    listing_key: str = Field(..., alias="ListingKey", min_length=1)
    modification_timestamp: datetime = Field(..., alias="ModificationTimestamp")

    parse_timestamps = field_validator("modification_timestamp", mode="before")(_timestamp)


class MemberRecord(UpstreamRecord):
    member_key: str = Field(..., alias="MemberKey", min_length=1)
    member_full_name: Optional[str] = Field(None, alias="MemberFullName")
    member_email: Optional[str] = Field(None, alias="MemberEmail")
    office_key: Optional[str] = Field(None, alias="OfficeKey")
    originating_system: str = Field(..., alias="OriginatingSystemName")
    modification_timestamp: datetime = Field(..., alias="ModificationTimestamp")

    parse_timestamps = field_validator("modification_timestamp", mode="before")(_timestamp)


class OfficeRecord(UpstreamRecord):
    office_key: str = Field(..., alias="OfficeKey", min_length=1)
    office_name: Optional[str] = Field(None, alias="OfficeName")
    office_phone: Optional[str] = Field(None, alias="OfficePhone")
    originating_system: str = Field(..., alias="OriginatingSystemName")
    modification_timestamp: datetime = Field(..., alias="ModificationTimestamp")

    parse_timestamps = field_validator("modification_timestamp", mode="before")(_timestamp)


class OpenHouseRecord(UpstreamRecord):
    open_house_key: str = Field(..., alias="OpenHouseKey", min_length=1)
    listing_key: str = Field(..., alias="ListingKey", min_length=1)
    start_time: Optional[datetime] = Field(None, alias="OpenHouseStartTime")
    end_time: Optional[datetime] = Field(None, alias="OpenHouseEndTime")
    remarks: Optional[str] = Field(None, alias="OpenHouseRemarks")
    modification_timestamp: datetime = Field(..., alias="ModificationTimestamp")

    parse_timestamps = field_validator(
        "modification_timestamp", "start_time", "end_time", mode="before"
    )(_timestamp)
