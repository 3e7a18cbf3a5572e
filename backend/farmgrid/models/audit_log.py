# backend/farmgrid/models/audit_log.py
from sqlalchemy import Integer, String, Column, DateTime, JSON, Index
from .base import Base, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    event_type = Column(String, nullable=False)  # weekly_session_started, farm_updated, ...
    user_id = Column(String, nullable=True)
    related_id = Column(String, nullable=True)  # session uuid / farm id / image id
    payload = Column(JSON, nullable=True)
    ip = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_audit_logs_related", "related_id"),
        Index("idx_audit_logs_time", "created_at"),
    )
