"""
Read-only observability endpoints: sync progress, media progress, throttling
"""

from datetime import timedelta
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from api.dependencies import get_db
from schemas.api import (
    EngineStatusResponse,
    ProblematicEntityList,
    ProblematicEntityResponse,
    ProgressSnapshotResponse,
    RateLimitEventResponse,
    RateLimitSummary,
    SyncStateInfo,
)
from models import ProblematicEntity, ProblemStatus, ProgressSnapshot, RateLimitEvent, SyncState
from core.timeutils import utcnow
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/status", tags=["Status"])


@router.get("/sync", response_model=List[SyncStateInfo])
async def get_sync_states(db: AsyncSession = Depends(get_db)):
    """High-water marks and last outcome of every resource loop"""
    result = await db.execute(select(SyncState).order_by(SyncState.resource))
    return [SyncStateInfo.model_validate(state) for state in result.scalars().all()]


@router.get("/progress", response_model=List[ProgressSnapshotResponse])
async def get_progress(
    limit: int = Query(96, ge=1, le=1000, description="Number of recent snapshots to return"),
    db: AsyncSession = Depends(get_db),
):
    """Most recent progress snapshots, newest first"""
    result = await db.execute(
        select(ProgressSnapshot).order_by(ProgressSnapshot.recorded_at.desc()).limit(limit)
    )
    return [ProgressSnapshotResponse.model_validate(row) for row in result.scalars().all()]


@router.get("/problematic", response_model=ProblematicEntityList)
async def get_problematic_entities(
    status: Optional[ProblemStatus] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    """Listings with recorded failures, most recently updated first"""
    query = select(ProblematicEntity).order_by(ProblematicEntity.updated_at.desc()).limit(limit)
    if status is not None:
        query = query.where(ProblematicEntity.status == status)
    rows = (await db.execute(query)).scalars().all()

    counts = await db.execute(
        select(ProblematicEntity.status, func.count()).group_by(ProblematicEntity.status)
    )
    return ProblematicEntityList(
        items=[ProblematicEntityResponse.model_validate(row) for row in rows],
        counts_by_status={
            (s.value if isinstance(s, ProblemStatus) else str(s)): count for s, count in counts.all()
        },
    )


@router.get("/rate-limits", response_model=RateLimitSummary)
async def get_rate_limits(
    hours: int = Query(24, ge=1, le=168, description="Trailing window in hours"),
    limit: int = Query(50, ge=1, le=500, description="Number of recent events to return"),
    db: AsyncSession = Depends(get_db),
):
    """Throttling events over a trailing window"""
    since = utcnow() - timedelta(hours=hours)
    counts = await db.execute(
        select(RateLimitEvent.event_type, func.count())
        .where(RateLimitEvent.created_at >= since)
        .group_by(RateLimitEvent.event_type)
    )
    recent = await db.execute(
        select(RateLimitEvent)
        .where(RateLimitEvent.created_at >= since)
        .order_by(RateLimitEvent.created_at.desc())
        .limit(limit)
    )
    return RateLimitSummary(
        window_hours=hours,
        counts_by_type={event_type.value: count for event_type, count in counts.all()},
        recent_events=[RateLimitEventResponse.model_validate(e) for e in recent.scalars().all()],
    )


@router.get("/engine", response_model=EngineStatusResponse)
async def get_engine_status(request: Request):
    """Loop phases and rate limiter counters of the in-process engine"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return EngineStatusResponse(running=False)
    return EngineStatusResponse(**scheduler.status())
