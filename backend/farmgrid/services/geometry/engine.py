# backend/farmgrid/services/geometry/engine.py
"""
Geometry Engine.

All spatial work goes through a ``GeometryEngine`` instance that callers
receive by injection (see ``farmgrid.api.deps``). Geometries are shapely
objects in EPSG:4326 with (lon, lat) axis order, the same order GeoJSON
uses.

- Tessellation runs in a projected, metre-based CRS (the UTM zone of the
  boundary's centroid) and results are re-projected to EPSG:4326.
- Distance and area use geodesic computation on the WGS84 ellipsoid.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import shapely
from shapely.errors import ShapelyError
from shapely.geometry import Point, box, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform, unary_union
from shapely.prepared import prep
from pyproj import CRS, Geod, Transformer

from farmgrid.core.errors import GeometryError, InvalidCoordinateError

WGS84 = CRS.from_epsg(4326)
POLYGONAL = ("Polygon", "MultiPolygon")

# 浮動小数誤差で bbox が 1 セル分はみ出すのを防ぐ
_TILE_EPS = 1e-6


@dataclass(frozen=True)
class LatLon:
    lat: float
    lon: float

    def as_point(self) -> Point:
        return Point(self.lon, self.lat)


def to_lat_lon(lat: Any, lon: Any) -> LatLon:
    """Validate and coerce a coordinate pair; raises InvalidCoordinateError."""
    try:
        lat_f, lon_f = float(lat), float(lon)
    except (TypeError, ValueError):
        raise InvalidCoordinateError(f"Coordinates are not numeric: lat={lat!r}, lon={lon!r}")
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        raise InvalidCoordinateError(f"Coordinates are not finite: lat={lat_f}, lon={lon_f}")
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinateError(f"Latitude out of range [-90, 90]: {lat_f}")
    if not -180.0 <= lon_f <= 180.0:
        raise InvalidCoordinateError(f"Longitude out of range [-180, 180]: {lon_f}")
    return LatLon(lat=lat_f, lon=lon_f)


@dataclass(frozen=True)
class GridCell:
    row: int
    col: int
    geom: BaseGeometry  # EPSG:4326, tile ∩ boundary
    area_m2: float


class GeometryEngine(Protocol):
    def from_geojson(self, geojson: Union[str, dict]) -> BaseGeometry: ...
    def to_geojson(self, geom: BaseGeometry) -> dict: ...
    def dumps(self, geom: BaseGeometry) -> str: ...
    def validate(self, polygon: BaseGeometry) -> tuple[bool, Optional[str]]: ...
    def tessellate(self, boundary: BaseGeometry, resolution_m: float) -> list[GridCell]: ...
    def intersect(self, a: BaseGeometry, b: BaseGeometry) -> BaseGeometry: ...
    def is_empty(self, geom: Optional[BaseGeometry]) -> bool: ...
    def is_degenerate(self, polygon: Optional[BaseGeometry]) -> bool: ...
    def contains(self, polygon: BaseGeometry, point: LatLon) -> bool: ...
    def distance_m(self, a: LatLon, b: LatLon) -> float: ...
    def centroid(self, polygon: BaseGeometry) -> LatLon: ...
    def area_hectares(self, polygon: BaseGeometry) -> float: ...
    def bounds(self, geom: BaseGeometry) -> tuple[float, float, float, float]: ...


def utm_crs_for(lon: float, lat: float) -> CRS:
    zone = min(60, max(1, int((lon + 180.0) // 6) + 1))
    return CRS.from_epsg((32600 if lat >= 0 else 32700) + zone)


def _polygonal(geom: BaseGeometry) -> BaseGeometry:
    # 交差結果に線・点が混ざる場合は面だけ残す
    if geom.is_empty or geom.geom_type in POLYGONAL:
        return geom
    if geom.geom_type == "GeometryCollection":
        parts = [g for g in geom.geoms if g.geom_type in POLYGONAL]
        if parts:
            return unary_union(parts)
    return shapely.Polygon()


class ShapelyGeometryEngine:
    """GeometryEngine backed by shapely (planar ops) and pyproj (CRS, geodesics)."""

    def __init__(self, min_cell_area_m2: float = 1.0):
        self.min_cell_area_m2 = min_cell_area_m2
        self._geod = Geod(ellps="WGS84")

    # --- (de)serialisation ---

    def from_geojson(self, geojson: Union[str, dict]) -> BaseGeometry:
        try:
            data = json.loads(geojson) if isinstance(geojson, str) else geojson
            if isinstance(data, dict) and data.get("type") == "Feature":
                data = data.get("geometry")
            return shape(data)
        except (KeyError, TypeError, ValueError, AttributeError, IndexError, ShapelyError) as e:
            raise GeometryError(f"Unreadable GeoJSON geometry: {e}") from e

    def to_geojson(self, geom: BaseGeometry) -> dict:
        return json.loads(self.dumps(geom))

    def dumps(self, geom: BaseGeometry) -> str:
        return json.dumps(mapping(geom))

    # --- predicates ---

    def validate(self, polygon: BaseGeometry) -> tuple[bool, Optional[str]]:
        if polygon is None or polygon.is_empty:
            return False, "Empty geometry"
        if polygon.geom_type not in POLYGONAL:
            return False, f"Expected Polygon, got {polygon.geom_type}"
        minx, miny, maxx, maxy = polygon.bounds
        if minx < -180 or maxx > 180 or miny < -90 or maxy > 90:
            return False, "Coordinates out of range"
        if not shapely.is_valid(polygon):
            return False, shapely.is_valid_reason(polygon)
        if polygon.area == 0:
            return False, "Zero area"
        return True, None

    def require_valid(self, polygon: BaseGeometry) -> BaseGeometry:
        ok, reason = self.validate(polygon)
        if not ok:
            raise GeometryError(f"Invalid polygon: {reason}", details={"reason": reason})
        return polygon

    def is_empty(self, geom: Optional[BaseGeometry]) -> bool:
        return geom is None or geom.is_empty

    def is_degenerate(self, polygon: Optional[BaseGeometry]) -> bool:
        """True when no polygonal area survives repair (line/point-like rings).

        A bowtie's signed area is also 0, but ``make_valid`` splits it into
        two real triangles, so it is not degenerate.
        """
        if self.is_empty(polygon):
            return True
        if shapely.is_valid(polygon):
            return polygon.area == 0
        return _polygonal(shapely.make_valid(polygon)).area == 0

    def contains(self, polygon: BaseGeometry, point: LatLon) -> bool:
        """Point-in-polygon; a point on the boundary counts as inside."""
        if not polygon.is_valid:
            polygon = shapely.make_valid(polygon)
        return polygon.covers(point.as_point())

    # --- overlay ---

    def intersect(self, a: BaseGeometry, b: BaseGeometry) -> BaseGeometry:
        return _polygonal(a.intersection(b))

    def tessellate(self, boundary: BaseGeometry, resolution_m: float) -> list[GridCell]:
        """
        Clip a regular square tiling (edge = resolution_m metres, anchored at
        the boundary's projected bbox min corner) to the boundary.

        Returns cells in row-major order (south→north, west→east). Cells that
        are empty or smaller than ``min_cell_area_m2`` are dropped. A
        boundary that collapses to a line or point yields no cells; a
        self-intersecting one raises GeometryError.
        """
        if resolution_m is None or resolution_m <= 0:
            raise GeometryError(f"Grid resolution must be positive, got {resolution_m}")
        if self.is_degenerate(boundary):
            return []
        self.require_valid(boundary)

        c = boundary.centroid
        local = utm_crs_for(c.x, c.y)
        to_m = Transformer.from_crs(WGS84, local, always_xy=True)
        to_ll = Transformer.from_crs(local, WGS84, always_xy=True)

        projected = transform(to_m.transform, boundary)
        if projected.area == 0:
            return []
        minx, miny, maxx, maxy = projected.bounds
        ncols = max(1, math.ceil((maxx - minx) / resolution_m - _TILE_EPS))
        nrows = max(1, math.ceil((maxy - miny) / resolution_m - _TILE_EPS))
        prepared = prep(projected)

        cells: list[GridCell] = []
        for row in range(nrows):
            y0 = miny + row * resolution_m
            for col in range(ncols):
                x0 = minx + col * resolution_m
                tile = box(x0, y0, x0 + resolution_m, y0 + resolution_m)
                if not prepared.intersects(tile):
                    continue
                clipped = self.intersect(projected, tile)
                if clipped.is_empty or clipped.area < self.min_cell_area_m2:
                    continue
                cells.append(
                    GridCell(
                        row=row,
                        col=col,
                        geom=transform(to_ll.transform, clipped),
                        area_m2=clipped.area,
                    )
                )
        return cells

    # --- measurement ---

    def distance_m(self, a: LatLon, b: LatLon) -> float:
        a = to_lat_lon(a.lat, a.lon)
        b = to_lat_lon(b.lat, b.lon)
        _, _, dist = self._geod.inv(a.lon, a.lat, b.lon, b.lat)
        return float(dist)

    def centroid(self, polygon: BaseGeometry) -> LatLon:
        c = polygon.centroid
        return LatLon(lat=c.y, lon=c.x)

    def area_hectares(self, polygon: BaseGeometry) -> float:
        area, _ = self._geod.geometry_area_perimeter(polygon)
        return abs(area) / 10_000.0

    def bounds(self, geom: BaseGeometry) -> tuple[float, float, float, float]:
        return geom.bounds
