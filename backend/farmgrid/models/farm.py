# backend/farmgrid/models/farm.py
from sqlalchemy import Integer, String, Column, Float, Text, DateTime
from .base import Base, utcnow


class Farm(Base):
    __tablename__ = "farms"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    boundary = Column(Text, nullable=False)  # GeoJSON string (Polygon, EPSG:4326)
    center_lat = Column(Float, nullable=True)
    center_lon = Column(Float, nullable=True)
    area_ha = Column(Float, nullable=True)
    grid_resolution_m = Column(Integer, nullable=True)
    # 境界更新のたびに +1。古いグリッドは進行中セッションのスナップショット用に残す
    grid_version = Column(Integer, nullable=False, default=1)
    current_crop_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
