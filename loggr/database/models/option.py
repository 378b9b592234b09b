from sqlalchemy import Column, String, DateTime, JSON
from loggr.database.database_factory import Base, table_name
from loggr.core.utils import utcnow

OPTIONS_TABLE = table_name("loggr_options")


class Option(Base):
    """Small key-value config entries (the settings object lives under `cel_settings`)."""
    __tablename__ = OPTIONS_TABLE

    key = Column(String(191), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
