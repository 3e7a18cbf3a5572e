# backend/farmgrid/models/image.py
from sqlalchemy import Integer, String, Column, ForeignKey, Float, Text, DateTime, JSON
from .base import Base, utcnow
from .enums import VerificationStatus


class Image(Base):
    __tablename__ = "images"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=True)
    farm_id = Column(Integer, ForeignKey("farms.id", ondelete="SET NULL"), nullable=True)
    upload_id = Column(Integer, ForeignKey("uploads.id", ondelete="SET NULL"), nullable=True, unique=True)
    # リトライ時に同一 Image に解決させるためのキー
    local_upload_id = Column(String(64), nullable=False, unique=True, index=True)
    storage_object_ref = Column(String, nullable=False)
    exif_raw = Column(JSON, nullable=True)
    exif_lat = Column(Float, nullable=True)
    exif_lon = Column(Float, nullable=True)
    exif_timestamp = Column(DateTime(timezone=True), nullable=True)
    capture_lat = Column(Float, nullable=True)
    capture_lon = Column(Float, nullable=True)
    capture_timestamp = Column(DateTime(timezone=True), nullable=True)
    geom = Column(Text, nullable=True)  # GeoJSON string (Point, EPSG:4326)
    verification_status = Column(String, nullable=False, default=VerificationStatus.PENDING.value)
    verification_reason = Column(String, nullable=True)
    verification_distance_m = Column(Float, nullable=True)
    session_block_id = Column(
        Integer, ForeignKey("sampling_session_blocks.id", ondelete="SET NULL", use_alter=True),
        nullable=True, unique=True,
    )
    report_id = Column(Integer, ForeignKey("reports.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
