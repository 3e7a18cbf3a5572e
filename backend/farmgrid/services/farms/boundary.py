# backend/farmgrid/services/farms/boundary.py
from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session
from shapely.geometry.base import BaseGeometry

from farmgrid.core.errors import ForbiddenError, GeometryError, NotFoundError
from farmgrid.core.logger import get_logger
from farmgrid.models.farm import Farm
from farmgrid.services.geometry.engine import GeometryEngine, LatLon, to_lat_lon
from farmgrid.services.grid.builder import GridBuilder

log = get_logger("farms")


@dataclass(frozen=True)
class PreparedBoundary:
    geom: BaseGeometry
    geojson: str
    center: LatLon
    area_ha: float


def normalise_polygon(geojson: Any) -> dict:
    """
    Check a GeoJSON Polygon's structure and coordinate ranges and close
    any open rings. Feature wrappers are unwrapped.
    """
    if isinstance(geojson, dict) and geojson.get("type") == "Feature":
        geojson = geojson.get("geometry")
    if not isinstance(geojson, dict) or geojson.get("type") != "Polygon":
        raise GeometryError("Boundary must be a GeoJSON Polygon")
    rings = geojson.get("coordinates")
    if not isinstance(rings, list) or not rings:
        raise GeometryError("Polygon has no coordinates")

    closed = []
    for ring in rings:
        if not isinstance(ring, list):
            raise GeometryError("Polygon ring must be a list of positions")
        positions = []
        for pos in ring:
            if not isinstance(pos, (list, tuple)) or len(pos) < 2:
                raise GeometryError("Polygon position must be [lon, lat]")
            p = to_lat_lon(pos[1], pos[0])
            positions.append([p.lon, p.lat])
        if positions and positions[0] != positions[-1]:
            positions.append(list(positions[0]))
        if len(positions) < 4:
            raise GeometryError("Polygon ring needs at least 4 positions")
        closed.append(positions)

    out = copy.deepcopy(geojson)
    out["coordinates"] = closed
    return out


def load_owned_farm(db: Session, farm_id: int, user_id: str) -> Farm:
    farm = db.get(Farm, farm_id)
    if not farm:
        raise NotFoundError("Farm not found", details={"farmId": farm_id})
    if farm.user_id != user_id:
        raise ForbiddenError("You do not own this farm", details={"farmId": farm_id})
    return farm


class BoundaryService:
    def __init__(self, engine: GeometryEngine, grid_builder: GridBuilder):
        self.engine = engine
        self.grid_builder = grid_builder

    def prepare(self, boundary: Any) -> PreparedBoundary:
        polygon = normalise_polygon(boundary)
        geom = self.engine.from_geojson(polygon)
        ok, reason = self.engine.validate(geom)
        if not ok:
            raise GeometryError(f"Invalid polygon geometry: {reason}", details={"reason": reason})
        return PreparedBoundary(
            geom=geom,
            geojson=self.engine.dumps(geom),
            center=self.engine.centroid(geom),
            area_ha=self.engine.area_hectares(geom),
        )

    def create_farm(
        self,
        db: Session,
        user_id: str,
        name: str,
        boundary: Any,
        grid_resolution_m: Optional[int] = None,
        current_crop_id: Optional[str] = None,
    ) -> Farm:
        prepared = self.prepare(boundary)
        farm = Farm(
            user_id=user_id,
            name=name,
            boundary=prepared.geojson,
            center_lat=prepared.center.lat,
            center_lon=prepared.center.lon,
            area_ha=prepared.area_ha,
            grid_resolution_m=grid_resolution_m,
            grid_version=1,
            current_crop_id=current_crop_id,
        )
        db.add(farm)
        db.commit()
        db.refresh(farm)
        log.info("Farm created", extra={"farm_id": farm.id, "user_id": user_id})
        return farm

    def update_farm(
        self,
        db: Session,
        farm: Farm,
        *,
        name: Optional[str] = None,
        boundary: Any = None,
        grid_resolution_m: Optional[int] = None,
        current_crop_id: Optional[str] = None,
    ) -> Farm:
        if name is not None:
            farm.name = name
        if grid_resolution_m is not None:
            farm.grid_resolution_m = grid_resolution_m
        if current_crop_id is not None:
            farm.current_crop_id = current_crop_id
        if boundary is not None:
            prepared = self.prepare(boundary)
            if prepared.geojson != farm.boundary:
                farm.boundary = prepared.geojson
                farm.center_lat = prepared.center.lat
                farm.center_lon = prepared.center.lon
                farm.area_ha = prepared.area_ha
                # 既存セッションは凍結スナップショットで継続
                self.grid_builder.invalidate_grid(db, farm)
        db.add(farm)
        db.commit()
        db.refresh(farm)
        return farm
