"""
Rate-limit audit trail writer shared by the sync loops and the media pipeline.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from models import RateLimitEvent, RateLimitEventType
from core.exceptions import RateLimited
import logging

logger = logging.getLogger(__name__)


def event_type_for(exc: RateLimited) -> RateLimitEventType:
    return RateLimitEventType.CDN_429 if exc.source == "cdn" else RateLimitEventType.API_429


async def record_rate_limit_event(
    session_maker: async_sessionmaker,
    event_type: RateLimitEventType,
    source: str,
    endpoint: Optional[str] = None,
    entity_key: Optional[str] = None,
    response_body: Optional[str] = None,
    request_count: Optional[int] = None,
    cooldown_until: Optional[datetime] = None,
) -> None:
    """
    Append one audit row in its own transaction.

    Failing to write the audit row is logged and never propagated: the
    throttling itself is already being handled by the caller.
    """
    async with session_maker() as session:
        try:
            session.add(
                RateLimitEvent(
                    event_type=event_type,
                    source=source,
                    endpoint=endpoint[:500] if endpoint else None,
                    entity_key=entity_key,
                    response_body=response_body[:2000] if response_body else None,
                    request_count_at_event=request_count,
                    cooldown_until=cooldown_until,
                )
            )
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Failed to record {event_type.value} event for {source}: {e}")


async def record_from_exception(
    session_maker: async_sessionmaker,
    exc: RateLimited,
    source: str,
    cooldown_until: Optional[datetime] = None,
    request_count: Optional[int] = None,
    entity_key: Optional[str] = None,
) -> None:
    await record_rate_limit_event(
        session_maker,
        event_type_for(exc),
        source=source,
        endpoint=exc.endpoint,
        entity_key=entity_key or exc.entity_key,
        response_body=exc.response_body,
        request_count=request_count,
        cooldown_until=cooldown_until,
    )
