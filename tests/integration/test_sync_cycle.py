"""
Integration tests for resource sync cycles: upstream faked with httpx.MockTransport,
canonical store on SQLite
"""

import httpx
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock
from sqlalchemy import func, select
from core.exceptions import TransientUpstreamError
from core.timeutils import EPOCH
from ingestion.client import CatalogClient
from ingestion.rate_limiter import RateLimiter
from ingestion.sync import MemberSync, PropertySync, SyncPhase
from models import Member, MediaAsset, Property, RateLimitEvent, RateLimitEventType, SyncState

BASE_URL = "https://api.upstream.test/v2"


def catalog_client(handler, max_retries=1):
    return CatalogClient(
        RateLimiter("test", min_interval=0),
        base_url=BASE_URL,
        access_token="token",
        max_retries=max_retries,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=AsyncMock(),
    )


def paged_handler(pages, requests=None, failing_page=None, on_page=None):
    """Serve ``pages`` (lists of payloads) chained by @odata.nextLink"""

    def handler(request: httpx.Request) -> httpx.Response:
        index = int(request.url.params.get("page", "0"))
        if requests is not None:
            requests.append(request)
        if on_page is not None:
            on_page(index)
        if failing_page is not None and index == failing_page:
            return httpx.Response(503, text="upstream unavailable")
        body = {"value": pages[index]}
        if index + 1 < len(pages):
            body["@odata.nextLink"] = f"{BASE_URL}/Property?page={index + 1}"
        return httpx.Response(200, json=body)

    return handler


async def row_count(session_maker, model):
    async with session_maker() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def sync_state(session_maker, resource):
    async with session_maker() as session:
        return await session.get(SyncState, resource)


@pytest.fixture
def listing_pages(make_property, make_media, base_time):
    """Two pages (50 and 30 listings) in ascending modification order"""
    listings = [
        make_property(
            f"ACT{i:03d}",
            modified=base_time + timedelta(minutes=i),
            media=[make_media(f"ACT{i:03d}-M0")],
        )
        for i in range(80)
    ]
    return [listings[:50], listings[50:]]


class TestPropertySyncCycle:
    """Incremental cycle and high-water mark handling"""

    @pytest.mark.asyncio
    async def test_two_pages_advance_mark_to_max_observed(self, session_maker, listing_pages, base_time):
        requests = []
        sync = PropertySync(catalog_client(paged_handler(listing_pages, requests)), session_maker, batch_size=50)

        result = await sync.run_cycle()

        assert result["status"] == "success"
        assert result["pages"] == 2
        assert result["records_processed"] == 80
        assert await row_count(session_maker, Property) == 80
        assert await row_count(session_maker, MediaAsset) == 80

        state = await sync_state(session_maker, "Property")
        assert state.high_water_mark == base_time + timedelta(minutes=79)
        assert state.last_records_processed == 80
        assert state.last_success_at is not None
        assert state.error_message is None

        first = requests[0].url.params
        assert "ModificationTimestamp gt 1970-01-01T00:00:00.000Z" in first["$filter"]
        assert "MlgCanView eq true" in first["$filter"]
        assert "OriginatingSystemName eq 'ACTRIS'" in first["$filter"]
        assert first["$expand"] == "Media,Rooms,UnitTypes"
        assert first["$orderby"] == "ModificationTimestamp asc"
        assert sync.phase == SyncPhase.IDLE

    @pytest.mark.asyncio
    async def test_next_cycle_starts_from_mark(self, session_maker, listing_pages):
        sync = PropertySync(catalog_client(paged_handler(listing_pages)), session_maker, batch_size=50)
        await sync.run_cycle()

        requests = []
        sync.client = catalog_client(paged_handler([[]], requests))
        result = await sync.run_cycle()

        assert result["status"] == "success"
        assert result["records_processed"] == 0
        assert "ModificationTimestamp gt 2024-01-15T11:19:00.000Z" in requests[0].url.params["$filter"]
        state = await sync_state(session_maker, "Property")
        assert state.total_records_processed == 80
        assert state.last_run_at is not None

    @pytest.mark.asyncio
    async def test_failure_mid_cycle_keeps_mark(self, session_maker, make_property, base_time):
        pages = [
            [make_property(f"ACT{p}{i}", modified=base_time + timedelta(minutes=p * 10 + i)) for i in range(3)]
            for p in range(3)
        ]
        sync = PropertySync(catalog_client(paged_handler(pages, failing_page=1)), session_maker)

        with pytest.raises(TransientUpstreamError):
            await sync.run_cycle()

        state = await sync_state(session_maker, "Property")
        assert state.high_water_mark == EPOCH
        assert state.last_failure_at is not None
        assert "Server error" in state.error_message
        # Page 1 stays committed; the replay is absorbed by the idempotent upsert
        assert await row_count(session_maker, Property) == 3
        assert sync.phase == SyncPhase.IDLE

        sync.client = catalog_client(paged_handler(pages))
        result = await sync.run_cycle()
        assert result["status"] == "success"
        assert await row_count(session_maker, Property) == 9
        state = await sync_state(session_maker, "Property")
        assert state.high_water_mark == base_time + timedelta(minutes=22)

    @pytest.mark.asyncio
    async def test_mark_never_moves_backwards(self, session_maker, base_time):
        sync = PropertySync(catalog_client(paged_handler([[]])), session_maker)

        await sync._record_success(base_time, 0)
        mark = await sync._record_success(base_time - timedelta(days=1), 0)

        assert mark == base_time
        assert await sync.get_high_water_mark() == base_time

    @pytest.mark.asyncio
    async def test_invalid_records_skipped_but_observed(self, session_maker, make_property, base_time):
        bad = make_property("ACT-BAD", modified=base_time + timedelta(hours=1))
        del bad["OriginatingSystemName"]
        page = [make_property("ACT-GOOD", modified=base_time), bad]
        sync = PropertySync(catalog_client(paged_handler([page])), session_maker)

        result = await sync.run_cycle()

        assert result["records_processed"] == 1
        assert result["records_skipped"] == 1
        state = await sync_state(session_maker, "Property")
        assert state.high_water_mark == base_time + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_listing_with_invalid_media_is_still_stored(self, session_maker, make_property, make_media, base_time):
        broken = make_media("ACT1-M1", order=1)
        broken["MediaModificationTimestamp"] = None
        listing = make_property("ACT1", modified=base_time, media=[make_media("ACT1-M0"), broken])
        sync = PropertySync(catalog_client(paged_handler([[listing]])), session_maker)

        result = await sync.run_cycle()

        assert result["records_processed"] == 1
        assert result["records_skipped"] == 0
        async with session_maker() as session:
            assert await session.get(Property, "ACT1") is not None
            media = (await session.execute(select(MediaAsset.media_key))).scalars().all()
        assert media == ["ACT1-M0"]
        assert (await sync_state(session_maker, "Property")).high_water_mark == base_time

    @pytest.mark.asyncio
    async def test_stop_between_pages_interrupts_without_advancing(self, session_maker, listing_pages):
        sync = None

        def stop_after_first(index):
            if index == 0:
                sync.stop()

        client = catalog_client(paged_handler(listing_pages, on_page=stop_after_first))
        sync = PropertySync(client, session_maker, batch_size=50)

        result = await sync.run_cycle()

        assert result["status"] == "interrupted"
        assert result["pages"] == 1
        assert await row_count(session_maker, Property) == 50
        assert await sync_state(session_maker, "Property") is None
        assert (await sync.run_cycle())["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_upstream_429_is_recorded_not_raised(self, session_maker):
        def handler(request):
            return httpx.Response(429, text="quota exceeded")

        sync = PropertySync(catalog_client(handler), session_maker)

        result = await sync.run_cycle()

        assert result["status"] == "rate_limited"
        async with session_maker() as session:
            event = (await session.execute(select(RateLimitEvent))).scalar_one()
        assert event.event_type == RateLimitEventType.API_429
        assert event.source == "Property"
        assert event.response_body == "quota exceeded"
        state = await sync_state(session_maker, "Property")
        assert state.last_failure_at is not None
        assert state.high_water_mark == EPOCH


@pytest.mark.asyncio
async def test_member_sync(session_maker):
    requests = []
    page = [
        {
            "MemberKey": f"AG{i}",
            "MemberFullName": f"Agent {i}",
            "OriginatingSystemName": "ACTRIS",
            "ModificationTimestamp": f"2024-02-0{i + 1}T00:00:00.000Z",
        }
        for i in range(3)
    ]
    sync = MemberSync(catalog_client(paged_handler([page], requests)), session_maker)

    result = await sync.run_cycle()

    assert result["status"] == "success"
    assert requests[0].url.path == "/v2/Member"
    assert "MlgCanView" not in requests[0].url.params["$filter"]
    assert await row_count(session_maker, Member) == 3
    state = await sync_state(session_maker, "Member")
    assert state.high_water_mark.isoformat() == "2024-02-03T00:00:00"
