from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Index, UniqueConstraint
from loggr.database.database_factory import Base, table_name
from loggr.core.utils import utcnow

IP_MAPPING_TABLE = table_name("console_errors_ip_mapping")


class IpUserMapping(Base):
    __tablename__ = IP_MAPPING_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_address = Column(String(45), nullable=False)
    user_id = Column(BigInteger, nullable=False)
    first_seen = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=False, default=utcnow)
    login_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("ip_address", "user_id", name=f"uq_{IP_MAPPING_TABLE}_ip_user"),
        Index(f"ix_{IP_MAPPING_TABLE}_ip_last_seen", "ip_address", "last_seen"),
        Index(f"ix_{IP_MAPPING_TABLE}_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<IpUserMapping(ip='{self.ip_address}', user_id={self.user_id}, logins={self.login_count})>"
