# backend/farmgrid/schemas/upload.py
import datetime as dt
from typing import Literal, Optional

from pydantic import Field

from .commons import CamelModel


class UploadRegisterIn(CamelModel):
    local_upload_id: str = Field(min_length=1, max_length=64)
    # 端末が撮影時に取得した値（欠落は完了時に 400）
    capture_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    capture_lon: Optional[float] = Field(default=None, ge=-180, le=180)
    capture_timestamp: Optional[str] = None
    farm_id: Optional[int] = None
    session_block_id: Optional[int] = None
    filename: Optional[str] = None

    def device_meta(self) -> dict:
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            include={"capture_lat", "capture_lon", "capture_timestamp", "farm_id", "session_block_id"},
        )


class UploadRegisterOut(CamelModel):
    upload_id: int
    local_upload_id: str
    storage_object_ref: str
    status: str


class UploadCompleteIn(CamelModel):
    local_upload_id: str = Field(min_length=1, max_length=64)
    storage_object_ref: Optional[str] = None


class ExifOut(CamelModel):
    lat: Optional[float] = None
    lon: Optional[float] = None
    timestamp: Optional[dt.datetime] = None


class UploadCompleteOut(CamelModel):
    image_id: int
    verification: Literal["verified", "flagged"]
    verification_reason: Optional[str] = None
    distance_meters: Optional[float] = None
    linked_session_block_id: Optional[int] = None
    link_code: str
    link_detail: Optional[str] = None
    exif: ExifOut
    replayed: bool = False
