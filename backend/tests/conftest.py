from __future__ import annotations

import random
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from pyproj import Transformer
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from farmgrid.api.deps import get_metadata_source, get_rng
from farmgrid.core.auth import get_current_user_id
from farmgrid.core.errors import NotFoundError
from farmgrid.db import get_db
from farmgrid.main import app
from farmgrid.models import Base, Farm, Image
from farmgrid.models.enums import VerificationStatus
from farmgrid.services.farms.boundary import BoundaryService
from farmgrid.services.geometry.engine import ShapelyGeometryEngine
from farmgrid.services.grid.builder import GridBuilder


# Bengaluru; UTM zone 43N
CENTER_LAT, CENTER_LON = 12.9716, 77.5946
UTM_EPSG = "EPSG:32643"
USER_ID = "user-1"
EXIF_TS = "2025:11:30 04:11:56"
DEVICE_TS = "2025-11-30T04:12:03Z"


def square_polygon(
    size_m: float = 400.0,
    center_lat: float = CENTER_LAT,
    center_lon: float = CENTER_LON,
) -> dict:
    """GeoJSON Polygon that is an exact size_m x size_m square in UTM metres."""
    to_m = Transformer.from_crs("EPSG:4326", UTM_EPSG, always_xy=True)
    to_ll = Transformer.from_crs(UTM_EPSG, "EPSG:4326", always_xy=True)
    cx, cy = to_m.transform(center_lon, center_lat)
    h = size_m / 2
    corners = [(cx - h, cy - h), (cx + h, cy - h), (cx + h, cy + h), (cx - h, cy + h), (cx - h, cy - h)]
    return {"type": "Polygon", "coordinates": [[list(to_ll.transform(x, y)) for x, y in corners]]}


def bowtie_polygon() -> dict:
    lon, lat = CENTER_LON, CENTER_LAT
    d = 0.002
    return {
        "type": "Polygon",
        "coordinates": [[[lon, lat], [lon + d, lat + d], [lon + d, lat], [lon, lat + d], [lon, lat]]],
    }


class FakeMetadataSource:
    """In-memory object store keyed by storage object reference."""

    def __init__(self):
        self.objects: dict[str, dict[str, Any]] = {}

    def put(self, ref: str, lat: Optional[float], lon: Optional[float], timestamp: Optional[str] = EXIF_TS):
        self.objects[ref] = {
            "lat": lat,
            "lon": lon,
            "timestamp": timestamp,
            "raw": {"EXIF DateTimeOriginal": timestamp},
        }

    def fetch_metadata(self, object_ref: str) -> dict[str, Any]:
        if object_ref not in self.objects:
            raise NotFoundError("Stored object not found", details={"storageObjectRef": object_ref})
        return dict(self.objects[object_ref])


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session: Session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def geometry():
    return ShapelyGeometryEngine(min_cell_area_m2=1.0)


@pytest.fixture
def grid_builder(geometry):
    return GridBuilder(geometry)


@pytest.fixture
def make_farm(db, geometry, grid_builder):
    boundaries = BoundaryService(geometry, grid_builder)

    def _make(size_m: float = 400.0, user_id: str = USER_ID, resolution_m: int = 100, **kwargs) -> Farm:
        return boundaries.create_farm(
            db,
            user_id,
            kwargs.pop("name", "North field"),
            kwargs.pop("boundary", None) or square_polygon(size_m, **kwargs),
            grid_resolution_m=resolution_m,
        )

    return _make


@pytest.fixture
def make_image(db):
    counter = {"n": 0}

    def _make(
        farm: Optional[Farm],
        lat: float,
        lon: float,
        status: VerificationStatus = VerificationStatus.VERIFIED,
        user_id: str = USER_ID,
    ) -> Image:
        counter["n"] += 1
        image = Image(
            user_id=user_id,
            farm_id=farm.id if farm else None,
            local_upload_id=f"local-{counter['n']}",
            storage_object_ref=f"{user_id}/local-{counter['n']}",
            exif_lat=lat,
            exif_lon=lon,
            capture_lat=lat,
            capture_lon=lon,
            verification_status=status.value,
        )
        db.add(image)
        db.commit()
        db.refresh(image)
        return image

    return _make


@pytest.fixture
def metadata_source():
    return FakeMetadataSource()


@pytest.fixture
def current_user():
    return {"id": USER_ID}


@pytest.fixture
def api_client(session_factory, metadata_source, current_user):
    """FastAPI TestClient wired to an isolated in-memory SQLite DB."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = lambda: current_user["id"]
    app.dependency_overrides[get_metadata_source] = lambda: metadata_source
    app.dependency_overrides[get_rng] = lambda: random.Random(1234)

    yield TestClient(app)

    app.dependency_overrides.clear()
