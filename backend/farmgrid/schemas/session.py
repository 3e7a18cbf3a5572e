# backend/farmgrid/schemas/session.py
import datetime as dt
from typing import Optional

from pydantic import Field

from .commons import CamelModel, LatLonOut


class SessionStartIn(CamelModel):
    grid_resolution_m: Optional[int] = Field(default=None, ge=10, le=500)
    sample_size: Optional[int] = Field(default=None, ge=1, le=50)


class SessionBlockOut(CamelModel):
    id: int
    order_index: int
    status: str
    attempts: int
    image_id: Optional[int] = None
    centroid: LatLonOut
    geom: dict


class SessionOut(CamelModel):
    session_uuid: str
    farm_id: int
    status: str
    grid_resolution_m: int
    created_at: dt.datetime
    completed_at: Optional[dt.datetime] = None
    cancelled_at: Optional[dt.datetime] = None
    report_id: Optional[int] = None
    blocks: list[SessionBlockOut]


class SessionSubmitIn(CamelModel):
    notes: Optional[str] = Field(default=None, max_length=2000)
    farmer_growth_stage: Optional[str] = None


class SessionSubmitOut(CamelModel):
    session_uuid: str
    report_id: int
    status: str
    image_ids: list[int]
