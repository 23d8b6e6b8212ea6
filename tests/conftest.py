"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from models import Base
from datetime import datetime
from typing import AsyncGenerator, Any, Dict, List, Optional

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine; NullPool keeps connections off other loops"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def media_payload(
    media_key: str,
    order: int = 0,
    modified: Optional[datetime] = None,
    url: Optional[str] = None,
    category: str = "Photo",
) -> Dict[str, Any]:
    return {
        "MediaKey": media_key,
        "MediaModificationTimestamp": iso(modified or BASE_TIME),
        "MediaCategory": category,
        "Order": order,
        "MediaURL": url or f"https://media.upstream.test/{media_key}.jpg?sig=abc",
        "ShortDescription": f"Photo {order}",
        "ImageWidth": "1024.0",
        "ImageHeight": 768,
    }


def property_payload(
    listing_key: str = "ACT100",
    modified: Optional[datetime] = None,
    media: Optional[List[Dict[str, Any]]] = None,
    **overrides,
) -> Dict[str, Any]:
    payload = {
        "ListingKey": listing_key,
        "ListingId": f"MLS-{listing_key}",
        "OriginatingSystemName": "ACTRIS",
        "StandardStatus": "Active",
        "PropertyType": "Residential",
        "MlgCanView": True,
        "ModificationTimestamp": iso(modified or BASE_TIME),
        "ListPrice": 450000,
        "BedroomsTotal": "3.0",
        "BathroomsTotalInteger": 2,
        "LivingArea": "1850.5",
        "UnparsedAddress": "100 Main St, Austin TX 78701",
        "City": "Austin",
        "StateOrProvince": "TX",
        "PostalCode": "78701",
        "PublicRemarks": "Charming bungalow",
        "Media": media if media is not None else [],
        "Rooms": [{"RoomKey": f"{listing_key}-R1", "RoomType": "Kitchen", "RoomLevel": "Main"}],
        "UnitTypes": [],
        "X_CustomField": "kept in raw",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def make_property():
    """Factory for upstream Property payloads"""
    return property_payload


@pytest.fixture
def make_media():
    """Factory for upstream Media payloads"""
    return media_payload


@pytest.fixture
def to_iso():
    return iso


class FakeClock:
    """Monotonic clock whose sleep just advances time"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
