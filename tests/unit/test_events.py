"""
Unit tests for the rate-limit audit trail
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from core.exceptions import RateLimited
from ingestion.events import event_type_for, record_from_exception, record_rate_limit_event
from models import RateLimitEvent, RateLimitEventType


def test_event_type_for_source():
    assert event_type_for(RateLimited("x", source="api")) == RateLimitEventType.API_429
    assert event_type_for(RateLimited("x", source="cdn")) == RateLimitEventType.CDN_429


@pytest.mark.asyncio
async def test_record_from_exception(session_maker):
    exc = RateLimited(
        "throttled",
        source="cdn",
        endpoint="https://media.upstream.test/M1.jpg",
        entity_key="ACT1",
        response_body="slow down",
    )

    await record_from_exception(session_maker, exc, source="media_pipeline", request_count=12)

    async with session_maker() as session:
        event = (await session.execute(select(RateLimitEvent))).scalar_one()
    assert event.event_type == RateLimitEventType.CDN_429
    assert event.source == "media_pipeline"
    assert event.entity_key == "ACT1"
    assert event.response_body == "slow down"
    assert event.request_count_at_event == 12


@pytest.mark.asyncio
async def test_record_from_exception_with_owner_key(session_maker):
    exc = RateLimited("SlowDown", source="cdn", endpoint="s3://listing-media/test/actris/ACT1/0.jpg")

    await record_from_exception(session_maker, exc, source="media_pipeline", entity_key="ACT1")

    async with session_maker() as session:
        event = (await session.execute(select(RateLimitEvent))).scalar_one()
    assert event.entity_key == "ACT1"
    assert event.endpoint == "s3://listing-media/test/actris/ACT1/0.jpg"


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised():
    session = MagicMock()
    session.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))
    session.rollback = AsyncMock()
    session_maker = MagicMock()
    session_maker.return_value.__aenter__.return_value = session

    await record_rate_limit_event(session_maker, RateLimitEventType.API_429, source="Property")

    session.rollback.assert_awaited_once()
