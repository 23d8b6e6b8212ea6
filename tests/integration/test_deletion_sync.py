"""
Integration tests for the deletion sync
"""

import httpx
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, Mock
from sqlalchemy import select
from core.exceptions import RateLimited
from ingestion.client import CatalogClient
from ingestion.loaders.upsert_writer import UpsertWriter
from ingestion.rate_limiter import RateLimiter
from ingestion.sync import PropertyDeletionSync
from models import MediaAsset, Property, SyncState
from schemas.listing import PropertyRecord

BASE_URL = "https://api.upstream.test/v2"


def catalog_client(handler):
    return CatalogClient(
        RateLimiter("test", min_interval=0),
        base_url=BASE_URL,
        access_token="token",
        max_retries=1,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest_asyncio.fixture
async def seeded(session_maker, make_property, make_media):
    async with session_maker() as session:
        writer = UpsertWriter(session)
        for key in ("ACT1", "ACT2", "ACT3"):
            await writer.upsert_listing(
                PropertyRecord.from_payload(make_property(key, media=[make_media(f"{key}-M0")]))
            )
        await session.commit()


@pytest.fixture
def storage():
    storage = Mock()
    storage.delete_listing = AsyncMock(return_value=1)
    return storage


def deletion_feed(keys, requests):
    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"value": [
            {"ListingKey": key, "ModificationTimestamp": "2024-03-01T00:00:00.000Z"} for key in keys
        ]})

    return handler


@pytest.mark.asyncio
async def test_hidden_listings_are_deleted_with_media(session_maker, seeded, storage):
    requests = []
    sync = PropertyDeletionSync(
        catalog_client(deletion_feed(["ACT2", "ACT-UNKNOWN"], requests)),
        session_maker,
        storage=storage,
        min_properties=1,
    )

    result = await sync.run_cycle()

    assert result["status"] == "success"
    assert result["records_processed"] == 1
    params = requests[0].url.params
    assert "MlgCanView eq false" in params["$filter"]
    assert params["$select"] == "ListingKey,ModificationTimestamp"
    assert "$expand" not in params

    assert [c.args for c in storage.delete_listing.await_args_list] == [
        ("ACTRIS", "ACT2"), ("ACTRIS", "ACT-UNKNOWN")
    ]
    async with session_maker() as session:
        keys = (await session.execute(select(Property.listing_key).order_by(Property.listing_key))).scalars().all()
        media = (await session.execute(select(MediaAsset.media_key))).scalars().all()
        state = await session.get(SyncState, "PropertyDeletions")
    assert keys == ["ACT1", "ACT3"]
    assert sorted(media) == ["ACT1-M0", "ACT3-M0"]
    assert state.high_water_mark.isoformat() == "2024-03-01T00:00:00"


@pytest.mark.asyncio
async def test_skipped_below_minimum_property_count(session_maker, seeded, storage):
    requests = []
    sync = PropertyDeletionSync(
        catalog_client(deletion_feed(["ACT2"], requests)),
        session_maker,
        storage=storage,
        min_properties=500,
    )

    result = await sync.run_cycle()

    assert result["status"] == "skipped"
    assert requests == []
    storage.delete_listing.assert_not_awaited()


@pytest.mark.asyncio
async def test_storage_throttling_keeps_rows_for_next_cycle(session_maker, seeded, storage):
    storage.delete_listing.side_effect = RateLimited("slow down", source="cdn")
    sync = PropertyDeletionSync(
        catalog_client(deletion_feed(["ACT2"], [])),
        session_maker,
        storage=storage,
        min_properties=1,
    )

    result = await sync.run_cycle()

    assert result["status"] == "rate_limited"
    async with session_maker() as session:
        assert await session.get(Property, "ACT2") is not None
