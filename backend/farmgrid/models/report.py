# backend/farmgrid/models/report.py
from sqlalchemy import Integer, String, Column, ForeignKey, DateTime, JSON
from .base import Base, utcnow


class Report(Base):
    __tablename__ = "reports"
    id = Column(Integer, primary_key=True)
    farm_id = Column(Integer, ForeignKey("farms.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    session_uuid = Column(String(36), nullable=False, unique=True)
    image_ids = Column(JSON, nullable=False)  # [image_id, ...]
    farmer_growth_stage = Column(String, nullable=True)
    summary = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
