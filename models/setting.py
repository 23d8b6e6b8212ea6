from sqlalchemy import Column, String, DateTime, Text
from models.base import Base
from core.timeutils import utcnow

MEDIA_DOWNLOAD_DELAY_KEY = "media_download_delay_ms"


class Setting(Base):
    """Runtime knob written by the control surface and polled by the engine"""
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
