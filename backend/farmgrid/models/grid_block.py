# backend/farmgrid/models/grid_block.py
from sqlalchemy import Integer, Column, ForeignKey, Float, Text, DateTime, UniqueConstraint, Index
from .base import Base, utcnow


class GridBlock(Base):
    __tablename__ = "grid_blocks"
    __table_args__ = (
        # 同時 ensure_grid の競合はこの制約で解決する
        UniqueConstraint("farm_id", "grid_version", "resolution_m", "row_index", "col_index", name="uq_grid_cell"),
        Index("ix_grid_blocks_farm_grid", "farm_id", "grid_version", "resolution_m"),
    )
    id = Column(Integer, primary_key=True)
    farm_id = Column(Integer, ForeignKey("farms.id", ondelete="CASCADE"), nullable=False)
    grid_version = Column(Integer, nullable=False)
    resolution_m = Column(Integer, nullable=False)
    row_index = Column(Integer, nullable=False)
    col_index = Column(Integer, nullable=False)
    geom = Column(Text, nullable=False)  # GeoJSON string (Polygon|MultiPolygon, EPSG:4326)
    centroid_lat = Column(Float, nullable=False)
    centroid_lon = Column(Float, nullable=False)
    area_m2 = Column(Float, nullable=False)
    min_lon = Column(Float, nullable=False)
    min_lat = Column(Float, nullable=False)
    max_lon = Column(Float, nullable=False)
    max_lat = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
