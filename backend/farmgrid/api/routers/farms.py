import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from farmgrid.api.deps import get_allocator, get_boundary_service, get_grid_builder
from farmgrid.core.auth import get_current_user_id
from farmgrid.db import get_db
from farmgrid.models.farm import Farm
from farmgrid.models.grid_block import GridBlock
from farmgrid.schemas.commons import FeatureCollection, GeoJSONFeature, LatLonOut
from farmgrid.schemas.farm import FarmIn, FarmOut, FarmUpdate
from farmgrid.services.audit.log import add_audit_log
from farmgrid.services.farms.boundary import BoundaryService, load_owned_farm
from farmgrid.services.grid.builder import GridBuilder
from farmgrid.services.sampling.allocator import SessionAllocator

router = APIRouter()


def _farm_out(f: Farm) -> FarmOut:
    return FarmOut(
        id=f.id,
        name=f.name,
        boundary=json.loads(f.boundary),
        center=LatLonOut(lat=f.center_lat, lon=f.center_lon) if f.center_lat is not None else None,
        area_ha=f.area_ha,
        grid_resolution_m=f.grid_resolution_m,
        grid_version=f.grid_version,
        current_crop_id=f.current_crop_id,
    )


@router.get("")
@router.get("/")
def list_farms(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> list[FarmOut]:
    rows = db.query(Farm).filter(Farm.user_id == user_id).order_by(Farm.id.asc()).all()
    return [_farm_out(f) for f in rows]


@router.post("", status_code=201)
@router.post("/", status_code=201)
def create_farm(
    payload: FarmIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    boundaries: BoundaryService = Depends(get_boundary_service),
) -> FarmOut:
    farm = boundaries.create_farm(
        db,
        user_id,
        payload.name,
        payload.boundary,
        grid_resolution_m=payload.grid_resolution_m,
        current_crop_id=payload.current_crop_id,
    )
    add_audit_log(
        db,
        "farm_created",
        user_id=user_id,
        related_id=farm.id,
        payload={"name": farm.name, "areaHa": farm.area_ha},
        request=request,
    )
    return _farm_out(farm)


@router.get("/{farm_id}")
def get_farm(
    farm_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> FarmOut:
    return _farm_out(load_owned_farm(db, farm_id, user_id))


@router.patch("/{farm_id}")
def update_farm(
    farm_id: int,
    payload: FarmUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    boundaries: BoundaryService = Depends(get_boundary_service),
) -> FarmOut:
    farm = load_owned_farm(db, farm_id, user_id)
    version_before = farm.grid_version
    farm = boundaries.update_farm(
        db,
        farm,
        name=payload.name,
        boundary=payload.boundary,
        grid_resolution_m=payload.grid_resolution_m,
        current_crop_id=payload.current_crop_id,
    )
    add_audit_log(
        db,
        "farm_updated",
        user_id=user_id,
        related_id=farm.id,
        payload={
            "fields": sorted(payload.model_dump(exclude_unset=True)),
            "gridVersion": farm.grid_version,
            "gridInvalidated": farm.grid_version != version_before,
        },
        request=request,
    )
    return _farm_out(farm)


@router.get("/{farm_id}/grid")
def get_grid(
    farm_id: int,
    grid_resolution_m: Optional[int] = Query(default=None, alias="gridResolutionM", ge=10, le=500),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    grid_builder: GridBuilder = Depends(get_grid_builder),
    allocator: SessionAllocator = Depends(get_allocator),
) -> FeatureCollection:
    """
    現行グリッドを GeoJSON FeatureCollection で返す。
    - 未生成なら ensure_grid で生成（冪等）
    """
    farm = load_owned_farm(db, farm_id, user_id)
    resolution = allocator.resolve_resolution(farm, grid_resolution_m)
    grid_builder.ensure_grid(db, farm, resolution)
    rows = (
        grid_builder.blocks_query(db, farm, resolution)
        .order_by(GridBlock.row_index.asc(), GridBlock.col_index.asc())
        .all()
    )
    feats = [
        GeoJSONFeature(
            geometry=json.loads(g.geom),
            properties={
                "id": g.id,
                "row": g.row_index,
                "col": g.col_index,
                "areaM2": g.area_m2,
                "gridVersion": g.grid_version,
                "gridResolutionM": g.resolution_m,
            },
        )
        for g in rows
    ]
    return FeatureCollection(features=feats)
