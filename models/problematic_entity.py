from sqlalchemy import Column, String, Integer, Enum, DateTime, Text, Index
from models.base import Base, ProblemStatus
from core.timeutils import utcnow


class ProblematicEntity(Base):
    """
    Per-listing failure/cooldown state consulted by the media pipeline.

    Purpose:
    - Contain listings whose media repeatedly gets throttled or fails
    - Escalate from short cooldowns to a permanent skip
    - Give operators a row to clear by hand

    Design:
    - Created lazily on the first throttling/failure for a listing
    - Cooldown expiry is evaluated at selection time (no sweeper)
    - Only an operator moves a row out of permanent_skip (status = cleared)
    """
    __tablename__ = "problematic_entities"

    entity_key = Column(String(100), primary_key=True)

    rate_limit_count = Column(Integer, nullable=False, default=0)
    consecutive_fails = Column(Integer, nullable=False, default=0)

    status = Column(Enum(ProblemStatus), nullable=False, default=ProblemStatus.ACTIVE)
    cooldown_until = Column(DateTime, nullable=True)

    first_rate_limit_at = Column(DateTime, nullable=True)
    last_rate_limit_at = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_problematic_status_cooldown", "status", "cooldown_until"),
    )
