from sqlalchemy import Column, String, DateTime, Text, Index
from models.base import Base, JSONType
from core.timeutils import utcnow


class OpenHouse(Base):
    """
    Scheduled open house, keyed by OpenHouseKey.

    listing_key is not a foreign key: open houses may arrive before their
    listing has been synced.
    """
    __tablename__ = "open_houses"

    open_house_key = Column(String(100), primary_key=True)
    listing_key = Column(String(100), nullable=False, index=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    remarks = Column(Text, nullable=True)
    modification_timestamp = Column(DateTime, nullable=False)
    raw = Column(JSONType, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_open_houses_time", "start_time", "end_time"),
    )
