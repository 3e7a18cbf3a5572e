# backend/farmgrid/schemas/farm.py
from typing import Optional

from pydantic import Field

from .commons import CamelModel, LatLonOut


class FarmIn(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    boundary: dict  # GeoJSON Polygon (lon, lat)
    grid_resolution_m: Optional[int] = Field(default=None, ge=10, le=500)
    current_crop_id: Optional[str] = None


class FarmUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    boundary: Optional[dict] = None
    grid_resolution_m: Optional[int] = Field(default=None, ge=10, le=500)
    current_crop_id: Optional[str] = None


class FarmOut(CamelModel):
    id: int
    name: str
    boundary: dict
    center: Optional[LatLonOut] = None
    area_ha: Optional[float] = None
    grid_resolution_m: Optional[int] = None
    grid_version: int
    current_crop_id: Optional[str] = None
