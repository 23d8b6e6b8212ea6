from sqlalchemy import Column, Integer, String, DateTime, Text, BigInteger
from models.base import Base
from core.timeutils import EPOCH


class SyncState(Base):
    """
    Tracks incremental ingestion state per upstream resource.

    Purpose:
    - Resume sync from the last fully persisted modification timestamp
    - Signal liveness (last_run_at is stamped even when nothing changed)
    - Expose failures to the observability surface

    Design:
    - One row per resource
    - high_water_mark only moves forward, and only after a whole cycle succeeded
    """
    __tablename__ = "sync_state"

    resource = Column(String(50), primary_key=True)
    originating_system = Column(String(100), nullable=False)

    # Watermark
    high_water_mark = Column(DateTime, nullable=False, default=EPOCH)

    # Statistics
    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    total_records_processed = Column(BigInteger, default=0, nullable=False)
    last_records_processed = Column(Integer, default=0, nullable=False)

    error_message = Column(Text, nullable=True)
