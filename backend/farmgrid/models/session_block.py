# backend/farmgrid/models/session_block.py
from sqlalchemy import Integer, String, Column, ForeignKey, Float, Text, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from .base import Base, utcnow
from .enums import BlockStatus


class SessionBlock(Base):
    __tablename__ = "sampling_session_blocks"
    __table_args__ = (
        UniqueConstraint("session_id", "order_index", name="uq_session_block_order"),
        UniqueConstraint("session_id", "grid_block_id", name="uq_session_block_cell"),
        Index("ix_session_blocks_bbox", "min_lon", "max_lon", "min_lat", "max_lat"),
    )
    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("sampling_sessions.id", ondelete="CASCADE"), nullable=False)
    grid_block_id = Column(Integer, ForeignKey("grid_blocks.id"), nullable=False)
    order_index = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=BlockStatus.PENDING.value)  # PENDING|COMPLETED|FAILED|FLAGGED
    attempts = Column(Integer, nullable=False, default=0)
    # 1画像 = 1ブロック（両方向ユニーク）
    image_id = Column(Integer, ForeignKey("images.id", ondelete="SET NULL"), nullable=True, unique=True)
    # セッション作成時点のセル形状を凍結
    geom = Column(Text, nullable=False)  # GeoJSON string (EPSG:4326)
    centroid_lat = Column(Float, nullable=False)
    centroid_lon = Column(Float, nullable=False)
    min_lon = Column(Float, nullable=False)
    min_lat = Column(Float, nullable=False)
    max_lon = Column(Float, nullable=False)
    max_lat = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("SamplingSession", back_populates="blocks")
