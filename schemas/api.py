"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import ProblemStatus, RateLimitEventType
from core.timeutils import utcnow


# ============================================================================
# Health Check Schemas
# ============================================================================

class SyncStateInfo(BaseModel):
    """Sync state of one resource loop"""
    model_config = ConfigDict(from_attributes=True)

    resource: str
    originating_system: str
    high_water_mark: datetime
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_records_processed: int = 0
    last_records_processed: int = 0
    error_message: Optional[str] = None

    @property
    def failing(self) -> bool:
        if self.last_failure_at is None:
            return False
        return self.last_success_at is None or self.last_failure_at > self.last_success_at


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    sync_states: List[SyncStateInfo] = Field(default_factory=list)
    total_resources: int = 0
    failing_resources: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.total_resources == 0 or self.failing_resources == 0:
            self.status = "healthy"
        elif self.failing_resources < self.total_resources:
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "total_resources": 5,
                "failing_resources": 0,
                "sync_states": [
                    {
                        "resource": "Property",
                        "originating_system": "ACTRIS",
                        "high_water_mark": "2024-01-15T10:00:00Z",
                        "last_run_at": "2024-01-15T10:25:00Z",
                        "last_success_at": "2024-01-15T10:25:00Z",
                        "total_records_processed": 15000,
                        "last_records_processed": 25
                    }
                ]
            }
        }
    )


# ============================================================================
# Status Schemas
# ============================================================================

class ProgressSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    recorded_at: datetime
    total_properties: int
    active_properties: int
    total_media: int
    downloaded_media: int
    missing_media: int
    download_percentage: int
    properties_with_missing_media: int
    media_downloads_in_interval: int
    api_rate_limited: bool
    cdn_rate_limited: bool


class ProblematicEntityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    entity_key: str
    status: ProblemStatus
    rate_limit_count: int
    consecutive_fails: int
    cooldown_until: Optional[datetime] = None
    first_rate_limit_at: Optional[datetime] = None
    last_rate_limit_at: Optional[datetime] = None
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None


class ProblematicEntityList(BaseModel):
    items: List[ProblematicEntityResponse]
    counts_by_status: Dict[str, int] = Field(default_factory=dict)


class RateLimitEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: int
    event_type: RateLimitEventType
    source: str
    endpoint: Optional[str] = None
    entity_key: Optional[str] = None
    request_count_at_event: Optional[int] = None
    cooldown_until: Optional[datetime] = None
    created_at: datetime


class RateLimitSummary(BaseModel):
    """Throttling over a trailing window"""
    window_hours: int
    counts_by_type: Dict[str, int]
    recent_events: List[RateLimitEventResponse]


class EngineStatusResponse(BaseModel):
    running: bool
    started_at: Optional[datetime] = None
    loops: Dict[str, str] = Field(default_factory=dict)
    media_pipeline_running: bool = False
    storage_configured: bool = False
    rate_limiter: Optional[Dict[str, Any]] = None


# ============================================================================
# Control Schemas
# ============================================================================

class MediaDelayResponse(BaseModel):
    delay_ms: int
    minimum_ms: int
    maximum_ms: int
    updated_at: Optional[datetime] = None


class MediaDelayUpdate(BaseModel):
    delay_ms: int = Field(..., description="Pause after each successful media download")


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Resource not found",
                "detail": "No problematic entity with key 'X123'",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
    )
