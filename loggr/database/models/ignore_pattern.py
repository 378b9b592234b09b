from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Index
from loggr.database.database_factory import Base, table_name
from loggr.core.utils import utcnow
import enum

IGNORE_PATTERNS_TABLE = table_name("console_errors_ignore_patterns")


class PatternType(str, enum.Enum):
    EXACT_MESSAGE = "exact_message"
    MESSAGE_CONTAINS = "message_contains"
    EXACT_SOURCE = "exact_source"
    SOURCE_CONTAINS = "source_contains"
    TYPE = "type"
    REGEX = "regex"


class IgnorePattern(Base):
    __tablename__ = IGNORE_PATTERNS_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    pattern_type = Column(String(50), nullable=False)
    pattern_value = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Reporting counters, bumped whenever the pattern suppresses a record
    ignore_count = Column(Integer, nullable=False, default=0)
    last_ignored = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(f"ix_{IGNORE_PATTERNS_TABLE}_active_type", "is_active", "pattern_type"),
    )

    def __repr__(self):
        return f"<IgnorePattern(id={self.id}, type='{self.pattern_type}', active={self.is_active})>"
