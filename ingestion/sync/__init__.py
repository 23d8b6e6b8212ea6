"""
Incremental sync loops, one per upstream resource.

Each loop owns a high-water mark in the sync_state table and advances it
only after a complete fetch+persist cycle.
"""

from ingestion.sync.base import ResourceSync, SyncPhase
from ingestion.sync.properties import PropertySync
from ingestion.sync.deletions import PropertyDeletionSync
from ingestion.sync.members import MemberSync
from ingestion.sync.offices import OfficeSync
from ingestion.sync.open_houses import OpenHouseSync

__all__ = [
    "ResourceSync",
    "SyncPhase",
    "PropertySync",
    "PropertyDeletionSync",
    "MemberSync",
    "OfficeSync",
    "OpenHouseSync",
]
