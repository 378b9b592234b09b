from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, Boolean, Index
from loggr.database.database_factory import Base, table_name
from loggr.core.utils import utcnow

CONSOLE_ERRORS_TABLE = table_name("console_errors")


class ConsoleError(Base):
    __tablename__ = CONSOLE_ERRORS_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Always the server clock, never a client supplied value
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    error_type = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=False)
    error_source = Column(String(255), nullable=True)
    error_line = Column(Integer, nullable=True)
    error_column = Column(Integer, nullable=True)
    stack_trace = Column(Text, nullable=True)

    # Request context
    user_agent = Column(Text, nullable=True)
    page_url = Column(String(255), nullable=True)
    user_ip = Column(String(45), nullable=True)
    user_id = Column(BigInteger, nullable=True)
    associated_user_id = Column(BigInteger, nullable=True)  # Back-filled by IP correlation
    session_id = Column(String(255), nullable=True)
    is_login_page = Column(Boolean, nullable=False, default=False)

    # JSON text, size capped on write
    additional_data = Column(Text, nullable=True)

    __table_args__ = (
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_timestamp", "timestamp"),
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_ip_time", "user_ip", "timestamp"),
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_type_time", "error_type", "timestamp"),
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_login_time", "is_login_page", "timestamp"),
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_user_time", "user_id", "timestamp"),
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_type_login_time", "error_type", "is_login_page", "timestamp"),
        Index(f"ix_{CONSOLE_ERRORS_TABLE}_associated_user", "associated_user_id"),
    )

    def __repr__(self):
        return f"<ConsoleError(id={self.id}, error_type='{self.error_type}', timestamp='{self.timestamp}')>"
