"""
Pydantic schemas for data validation and serialization.

Schemas:
    listing: Upstream RESO payloads (Property, Media, Member, Office, OpenHouse)
    api: API endpoint request/response schemas

Features:
    - Upstream PascalCase names mapped through field aliases
    - Decimal strings rounded for integer fields
    - Timestamps normalized to naive UTC
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.listing import PropertyRecord
    from schemas.api import HealthCheckResponse

Example:
    record = PropertyRecord.from_payload({
        "ListingKey": "ACT123",
        "OriginatingSystemName": "ACTRIS",
        "ModificationTimestamp": "2024-01-15T10:00:00.000Z",
        "BedroomsTotal": "3.0",
    })

    assert record.bedrooms_total == 3
    assert record.raw["ListingKey"] == "ACT123"

Validation:
    Records failing validation raise pydantic.ValidationError; the sync
    loop logs and skips them without losing the page.
"""

__all__ = [
    "PropertyRecord",
    "MediaRecord",
    "MemberRecord",
    "OfficeRecord",
    "OpenHouseRecord",
    "DeletedPropertyRecord",
    "HealthCheckResponse",
]
