"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, SyncStateInfo
from models import SyncState
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Sync state for every resource loop
    - degraded when some loops are failing, unhealthy when all are
    """
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    sync_states = []
    if db_connected:
        try:
            result = await db.execute(select(SyncState).order_by(SyncState.resource))
            sync_states = [SyncStateInfo.model_validate(state) for state in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch sync states: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        sync_states=sync_states,
        total_resources=len(sync_states),
        failing_resources=sum(1 for state in sync_states if state.failing),
    )
