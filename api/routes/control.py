"""
Operator controls: media download delay and problematic-entity reset
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from api.dependencies import get_db, get_session_maker
from schemas.api import MediaDelayResponse, MediaDelayUpdate, ProblematicEntityResponse
from ingestion.media.tracker import ProblematicEntityTracker
from models import Setting, MEDIA_DOWNLOAD_DELAY_KEY
from core.config import settings
from core.timeutils import utcnow
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/control", tags=["Control"])


@router.get("/media-delay", response_model=MediaDelayResponse)
async def get_media_delay(db: AsyncSession = Depends(get_db)):
    row = await db.get(Setting, MEDIA_DOWNLOAD_DELAY_KEY)
    delay_ms = settings.MEDIA_DOWNLOAD_DELAY_MS
    if row is not None:
        try:
            delay_ms = int(row.value)
        except ValueError:
            logger.warning(f"Stored {MEDIA_DOWNLOAD_DELAY_KEY} is not an integer: {row.value!r}")
    return MediaDelayResponse(
        delay_ms=delay_ms,
        minimum_ms=settings.MEDIA_DELAY_MIN_MS,
        maximum_ms=settings.MEDIA_DELAY_MAX_MS,
        updated_at=row.updated_at if row is not None else None,
    )


@router.put("/media-delay", response_model=MediaDelayResponse)
async def update_media_delay(payload: MediaDelayUpdate, db: AsyncSession = Depends(get_db)):
    """Applied by the media pipeline within one poll interval"""
    if not settings.MEDIA_DELAY_MIN_MS <= payload.delay_ms <= settings.MEDIA_DELAY_MAX_MS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=(
                f"delay_ms must be between {settings.MEDIA_DELAY_MIN_MS} "
                f"and {settings.MEDIA_DELAY_MAX_MS}"
            ),
        )

    now = utcnow()
    row = await db.get(Setting, MEDIA_DOWNLOAD_DELAY_KEY)
    if row is None:
        row = Setting(
            key=MEDIA_DOWNLOAD_DELAY_KEY,
            value=str(payload.delay_ms),
            description="Delay in milliseconds after each media download",
            updated_at=now,
        )
        db.add(row)
    else:
        row.value = str(payload.delay_ms)
        row.updated_at = now
    await db.commit()

    logger.info(f"Media download delay set to {payload.delay_ms}ms")
    return MediaDelayResponse(
        delay_ms=payload.delay_ms,
        minimum_ms=settings.MEDIA_DELAY_MIN_MS,
        maximum_ms=settings.MEDIA_DELAY_MAX_MS,
        updated_at=now,
    )


@router.post("/problematic/{entity_key}/clear", response_model=ProblematicEntityResponse)
async def clear_problematic_entity(
    entity_key: str,
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Lift a cooldown or permanent skip and zero the counters"""
    entity = await ProblematicEntityTracker(session_maker).clear(entity_key, notes="cleared by operator")
    if entity is None:
        raise HTTPException(status_code=404, detail=f"No problematic entity with key '{entity_key}'")
    return ProblematicEntityResponse.model_validate(entity)
