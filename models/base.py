from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class ProblemStatus(str, enum.Enum):
    """Problematic-entity lifecycle"""
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    PERMANENT_SKIP = "permanent_skip"
    CLEARED = "cleared"


class RateLimitEventType(str, enum.Enum):
    """Throttling occurrences recorded in the audit table"""
    API_429 = "api_429"
    CDN_429 = "cdn_429"
    HOURLY_LIMIT = "hourly_limit"


class ResourceName(str, enum.Enum):
    """Upstream resources with their own sync loop and high-water mark"""
    PROPERTY = "Property"
    PROPERTY_DELETIONS = "PropertyDeletions"
    MEMBER = "Member"
    OFFICE = "Office"
    OPEN_HOUSE = "OpenHouse"
