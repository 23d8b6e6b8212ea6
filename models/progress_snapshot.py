from sqlalchemy import Column, BigInteger, Integer, Boolean, DateTime
from models.base import Base
from core.timeutils import utcnow


class ProgressSnapshot(Base):
    """
    Immutable aggregate health counters recorded on a fixed cadence.

    Feeds observability only; nothing in the engine reads it back for
    control decisions.
    """
    __tablename__ = "progress_snapshots"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    recorded_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    total_properties = Column(Integer, nullable=False)
    active_properties = Column(Integer, nullable=False)

    total_media = Column(Integer, nullable=False)
    downloaded_media = Column(Integer, nullable=False)
    missing_media = Column(Integer, nullable=False)
    download_percentage = Column(Integer, nullable=False)
    properties_with_missing_media = Column(Integer, nullable=False)
    media_downloads_in_interval = Column(Integer, nullable=False, default=0)

    api_rate_limited = Column(Boolean, nullable=False, default=False)
    cdn_rate_limited = Column(Boolean, nullable=False, default=False)
