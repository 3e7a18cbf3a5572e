# backend/farmgrid/models/sampling_session.py
from sqlalchemy import Integer, String, Column, ForeignKey, DateTime, Index
from sqlalchemy.orm import relationship
from .base import Base, utcnow
from .enums import SessionStatus


class SamplingSession(Base):
    __tablename__ = "sampling_sessions"
    __table_args__ = (
        Index("ix_sampling_sessions_farm_status", "farm_id", "status"),
    )
    id = Column(Integer, primary_key=True)
    session_uuid = Column(String(36), nullable=False, unique=True, index=True)
    farm_id = Column(Integer, ForeignKey("farms.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SessionStatus.ACTIVE.value)  # ACTIVE|COMPLETED|CANCELLED
    resolution_m = Column(Integer, nullable=False)
    grid_version = Column(Integer, nullable=False)
    report_id = Column(Integer, ForeignKey("reports.id", ondelete="SET NULL"), nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    blocks = relationship(
        "SessionBlock",
        back_populates="session",
        order_by="SessionBlock.order_index",
        cascade="all, delete-orphan",
    )
