"""
SQLAlchemy ORM models for database tables.

This package defines the canonical store schema:

Models:
    base: Base declarative class, cross-dialect JSON type and shared enums
    sync_state: Per-resource high-water marks
    listing: Listings and their room / unit type sub-records
    media: Listing media with rehosting state
    directory: Members and offices
    open_house: Open house schedule
    problematic_entity: Failure/cooldown state per listing
    rate_limit_event: Throttling audit trail
    progress_snapshot: Periodic aggregate health counters
    setting: Runtime knobs (media download delay)

Database Schema:
    All models inherit from the Base declarative class. JSON payloads use
    JSONB on PostgreSQL and plain JSON on other dialects.

Usage:
    from models import Property, MediaAsset, SyncState
    from models.base import ProblemStatus

Relationships:
    - Property → MediaAsset / Room / UnitType (one-to-many, cascade delete)
    - ProblematicEntity.entity_key → Property.listing_key (logical, no FK)
"""

from models.base import Base, ProblemStatus, RateLimitEventType, ResourceName
from models.sync_state import SyncState
from models.listing import Property, Room, UnitType
from models.media import MediaAsset
from models.directory import Member, Office
from models.open_house import OpenHouse
from models.problematic_entity import ProblematicEntity
from models.rate_limit_event import RateLimitEvent
from models.progress_snapshot import ProgressSnapshot
from models.setting import Setting, MEDIA_DOWNLOAD_DELAY_KEY

__all__ = [
    "Base",
    "ProblemStatus",
    "RateLimitEventType",
    "ResourceName",
    "SyncState",
    "Property",
    "Room",
    "UnitType",
    "MediaAsset",
    "Member",
    "Office",
    "OpenHouse",
    "ProblematicEntity",
    "RateLimitEvent",
    "ProgressSnapshot",
    "Setting",
    "MEDIA_DOWNLOAD_DELAY_KEY",
]
