from sqlalchemy import Column, String, DateTime
from models.base import Base, JSONType
from core.timeutils import utcnow


class Member(Base):
    """Agent roster entry, keyed by MemberKey"""
    __tablename__ = "members"

    member_key = Column(String(100), primary_key=True)
    member_full_name = Column(String(200), nullable=True)
    member_email = Column(String(200), nullable=True)
    office_key = Column(String(100), nullable=True, index=True)
    originating_system = Column(String(100), nullable=False)
    modification_timestamp = Column(DateTime, nullable=False)
    raw = Column(JSONType, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Office(Base):
    """Brokerage office, keyed by OfficeKey"""
    __tablename__ = "offices"

    office_key = Column(String(100), primary_key=True)
    office_name = Column(String(200), nullable=True)
    office_phone = Column(String(50), nullable=True)
    originating_system = Column(String(100), nullable=False)
    modification_timestamp = Column(DateTime, nullable=False)
    raw = Column(JSONType, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
