# backend/farmgrid/services/grid/builder.py
from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from farmgrid.core.logger import get_logger
from farmgrid.models.farm import Farm
from farmgrid.models.grid_block import GridBlock
from farmgrid.services.geometry.engine import GeometryEngine

log = get_logger("grid")


class GridBuilder:
    """
    Lazily materialises a farm's grid for one (grid_version, resolution) key.

    The whole cell set is inserted in a single transaction. Two concurrent
    first-time builds collide on ``uq_grid_cell``; the loser rolls back and
    reads the winner's rows, so callers always observe all cells or none.
    """

    def __init__(self, engine: GeometryEngine):
        self.engine = engine

    def blocks_query(self, db: Session, farm: Farm, resolution_m: int) -> Query:
        return db.query(GridBlock).filter(
            GridBlock.farm_id == farm.id,
            GridBlock.grid_version == farm.grid_version,
            GridBlock.resolution_m == resolution_m,
        )

    def ensure_grid(self, db: Session, farm: Farm, resolution_m: int) -> int:
        """Build the grid if missing; returns the number of cells for the key."""
        existing = self.blocks_query(db, farm, resolution_m).count()
        if existing:
            return existing

        boundary = self.engine.from_geojson(farm.boundary)
        cells = self.engine.tessellate(boundary, resolution_m)
        if not cells:
            log.warning(
                "Farm boundary produced no grid cells",
                extra={"farm_id": farm.id, "resolution_m": resolution_m},
            )
            return 0

        rows = []
        for cell in cells:
            c = self.engine.centroid(cell.geom)
            min_lon, min_lat, max_lon, max_lat = self.engine.bounds(cell.geom)
            rows.append(
                GridBlock(
                    farm_id=farm.id,
                    grid_version=farm.grid_version,
                    resolution_m=resolution_m,
                    row_index=cell.row,
                    col_index=cell.col,
                    geom=self.engine.dumps(cell.geom),
                    centroid_lat=c.lat,
                    centroid_lon=c.lon,
                    area_m2=cell.area_m2,
                    min_lon=min_lon,
                    min_lat=min_lat,
                    max_lon=max_lon,
                    max_lat=max_lat,
                )
            )

        try:
            db.add_all(rows)
            db.commit()
        except IntegrityError:
            # 別トランザクションが先に全セルを書き込んだ
            db.rollback()
            count = self.blocks_query(db, farm, resolution_m).count()
            log.info(
                "Concurrent grid build won by another worker",
                extra={"farm_id": farm.id, "resolution_m": resolution_m, "count": count},
            )
            return count

        log.info(
            "Grid built",
            extra={"farm_id": farm.id, "resolution_m": resolution_m, "count": len(rows)},
        )
        return len(rows)

    def invalidate_grid(self, db: Session, farm: Farm) -> int:
        """
        Retire the current grid by bumping ``farm.grid_version``.

        Old GridBlock rows stay in place because in-flight SessionBlocks
        reference them; the next ``ensure_grid`` builds the new version.
        The caller owns the commit.
        """
        farm.grid_version = (farm.grid_version or 1) + 1
        db.add(farm)
        log.info(f"Grid invalidated, now at version {farm.grid_version}", extra={"farm_id": farm.id})
        return farm.grid_version
