from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, JSONType
from core.timeutils import utcnow


class MediaAsset(Base):
    """
    Media attached to a listing.

    Lifecycle:
    - Created/updated by the upsert writer from the listing payload
    - source_url is the (expiring) upstream URL, refreshed on every upsert
    - local_url is written once by the media pipeline after rehosting and is
      never cleared afterwards
    - non_retryable marks assets the source reported as gone
    """
    __tablename__ = "media"

    media_key = Column(String(150), primary_key=True)
    listing_key = Column(
        String(100), ForeignKey("properties.listing_key", ondelete="CASCADE"), nullable=False, index=True
    )

    source_url = Column(Text, nullable=True)
    local_url = Column(Text, nullable=True)
    modification_ts = Column(DateTime, nullable=False)

    category = Column(String(50), nullable=True)
    order_sequence = Column(Integer, nullable=True)
    caption = Column(Text, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)

    # Download tracking
    non_retryable = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    downloaded_at = Column(DateTime, nullable=True, index=True)

    raw = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    owner = relationship("Property", back_populates="media")

    __table_args__ = (
        Index("idx_media_listing_order", "listing_key", "order_sequence"),
        Index("idx_media_missing", "local_url", "non_retryable"),
    )
