# backend/farmgrid/models/upload.py
from sqlalchemy import Integer, String, Column, ForeignKey, DateTime, JSON
from .base import Base, utcnow
from .enums import UploadStatus


class Upload(Base):
    __tablename__ = "uploads"
    id = Column(Integer, primary_key=True)
    local_upload_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=True)
    farm_id = Column(Integer, ForeignKey("farms.id", ondelete="SET NULL"), nullable=True)
    session_block_id = Column(Integer, ForeignKey("sampling_session_blocks.id", ondelete="SET NULL"), nullable=True)
    device_meta = Column(JSON, nullable=True)  # {"captureLat":..,"captureLon":..,"captureTimestamp":..}
    filename = Column(String, nullable=True)
    storage_object_ref = Column(String, nullable=True)
    status = Column(String, nullable=False, default=UploadStatus.PENDING.value)  # PENDING|COMPLETED|FAILED
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
