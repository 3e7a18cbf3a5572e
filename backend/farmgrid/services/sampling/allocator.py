# backend/farmgrid/services/sampling/allocator.py
from __future__ import annotations

import random
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from farmgrid.core.errors import BadRequestError, EmptyGridError, NotFoundError
from farmgrid.core.logger import get_logger
from farmgrid.models.enums import BlockStatus, SessionStatus
from farmgrid.models.farm import Farm
from farmgrid.models.grid_block import GridBlock
from farmgrid.models.sampling_session import SamplingSession
from farmgrid.models.session_block import SessionBlock
from farmgrid.services.grid.builder import GridBuilder

log = get_logger("sampling")


class SessionAllocator:
    def __init__(
        self,
        grid_builder: GridBuilder,
        *,
        sample_size: int = 4,
        default_resolution_m: int = 50,
        min_resolution_m: int = 10,
        max_resolution_m: int = 500,
        rng: Optional[random.Random] = None,
    ):
        self.grid_builder = grid_builder
        self.sample_size = sample_size
        self.default_resolution_m = default_resolution_m
        self.min_resolution_m = min_resolution_m
        self.max_resolution_m = max_resolution_m
        self.rng = rng or random.SystemRandom()

    def resolve_resolution(self, farm: Farm, override: Optional[int] = None) -> int:
        # 優先順: リクエスト上書き > 農場設定 > 既定値
        resolution = override or farm.grid_resolution_m or self.default_resolution_m
        if not self.min_resolution_m <= resolution <= self.max_resolution_m:
            raise BadRequestError(
                f"gridResolutionM must be between {self.min_resolution_m} and {self.max_resolution_m}",
                details={"gridResolutionM": resolution},
            )
        return int(resolution)

    def start_session(
        self,
        db: Session,
        user_id: str,
        farm: Farm,
        resolution_m: Optional[int] = None,
        sample_size: Optional[int] = None,
    ) -> SamplingSession:
        """
        Create an ACTIVE session with up to ``sample_size`` distinct grid cells.

        Cells are drawn uniformly at random without replacement. When the grid
        has fewer cells than requested, all of them are used. The session row
        and its blocks are written in one transaction; each block freezes a
        copy of its cell's geometry, centroid and bbox.
        """
        resolution = self.resolve_resolution(farm, resolution_m)
        k = self.sample_size if sample_size is None else sample_size
        if k < 1:
            raise BadRequestError("sampleSize must be at least 1", details={"sampleSize": k})

        self.grid_builder.ensure_grid(db, farm, resolution)

        cell_ids = [
            row.id
            for row in self.grid_builder.blocks_query(db, farm, resolution)
            .with_entities(GridBlock.id)
            .order_by(GridBlock.id.asc())
        ]
        if not cell_ids:
            raise EmptyGridError(
                "Farm boundary yields no grid cells at this resolution; cannot start a session",
                details={"farmId": farm.id, "gridResolutionM": resolution},
            )

        chosen = self.rng.sample(cell_ids, min(k, len(cell_ids)))
        cells = {g.id: g for g in db.query(GridBlock).filter(GridBlock.id.in_(chosen)).all()}

        session = SamplingSession(
            session_uuid=str(uuid.uuid4()),
            farm_id=farm.id,
            user_id=user_id,
            status=SessionStatus.ACTIVE.value,
            resolution_m=resolution,
            grid_version=farm.grid_version,
        )
        for order_index, cell_id in enumerate(chosen):
            g = cells[cell_id]
            session.blocks.append(
                SessionBlock(
                    grid_block_id=g.id,
                    order_index=order_index,
                    status=BlockStatus.PENDING.value,
                    attempts=0,
                    geom=g.geom,
                    centroid_lat=g.centroid_lat,
                    centroid_lon=g.centroid_lon,
                    min_lon=g.min_lon,
                    min_lat=g.min_lat,
                    max_lon=g.max_lon,
                    max_lat=g.max_lat,
                )
            )

        try:
            db.add(session)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            log.exception("Session creation rolled back", extra={"farm_id": farm.id, "user_id": user_id})
            raise
        db.refresh(session)

        log.info(
            "Sampling session started",
            extra={
                "farm_id": farm.id,
                "user_id": user_id,
                "session_id": session.session_uuid,
                "resolution_m": resolution,
                "count": len(chosen),
            },
        )
        return session

    def fetch_session(self, db: Session, farm_id: int, session_uuid: str) -> SamplingSession:
        session = (
            db.query(SamplingSession)
            .filter(SamplingSession.farm_id == farm_id, SamplingSession.session_uuid == session_uuid)
            .one_or_none()
        )
        if session is None:
            raise NotFoundError("Session not found", details={"sessionUuid": session_uuid})
        return session
