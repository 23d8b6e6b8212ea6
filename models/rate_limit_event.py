from sqlalchemy import Column, BigInteger, String, Integer, Enum, DateTime, Text, Index
from models.base import Base, RateLimitEventType
from core.timeutils import utcnow


class RateLimitEvent(Base):
    """
    Append-only audit trail of throttling occurrences.

    Purpose:
    - Debug which listings and endpoints trigger upstream/CDN throttling
    - Drive the throttling flags of the progress snapshots

    Rows older than the retention window are purged by the progress recorder.
    """
    __tablename__ = "rate_limit_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    event_type = Column(Enum(RateLimitEventType), nullable=False, index=True)
    source = Column(String(100), nullable=False)  # "media_pipeline", "Property", ...
    endpoint = Column(String(500), nullable=True)
    entity_key = Column(String(100), nullable=True, index=True)

    response_body = Column(Text, nullable=True)
    request_count_at_event = Column(Integer, nullable=True)
    cooldown_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_rate_limit_events_created", "created_at"),
    )
