import json
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from farmgrid.api.deps import get_allocator, get_lifecycle
from farmgrid.core.auth import get_current_user_id
from farmgrid.db import get_db
from farmgrid.models.sampling_session import SamplingSession
from farmgrid.schemas.commons import LatLonOut
from farmgrid.schemas.session import (
    SessionBlockOut,
    SessionOut,
    SessionStartIn,
    SessionSubmitIn,
    SessionSubmitOut,
)
from farmgrid.services.audit.log import add_audit_log
from farmgrid.services.farms.boundary import load_owned_farm
from farmgrid.services.sampling.allocator import SessionAllocator
from farmgrid.services.sessions.lifecycle import SessionLifecycle

router = APIRouter()


def _session_out(s: SamplingSession) -> SessionOut:
    return SessionOut(
        session_uuid=s.session_uuid,
        farm_id=s.farm_id,
        status=s.status,
        grid_resolution_m=s.resolution_m,
        created_at=s.created_at,
        completed_at=s.completed_at,
        cancelled_at=s.cancelled_at,
        report_id=s.report_id,
        blocks=[
            SessionBlockOut(
                id=b.id,
                order_index=b.order_index,
                status=b.status,
                attempts=b.attempts,
                image_id=b.image_id,
                centroid=LatLonOut(lat=b.centroid_lat, lon=b.centroid_lon),
                geom=json.loads(b.geom),
            )
            for b in s.blocks
        ],
    )


@router.post("/{farm_id}/weekly-sessions/start", status_code=201)
def start_session(
    farm_id: int,
    request: Request,
    payload: Optional[SessionStartIn] = Body(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    allocator: SessionAllocator = Depends(get_allocator),
) -> SessionOut:
    farm = load_owned_farm(db, farm_id, user_id)
    payload = payload or SessionStartIn()
    session = allocator.start_session(
        db,
        user_id,
        farm,
        resolution_m=payload.grid_resolution_m,
        sample_size=payload.sample_size,
    )
    add_audit_log(
        db,
        "weekly_session_started",
        user_id=user_id,
        related_id=session.session_uuid,
        payload={"farmId": farm_id, "resM": session.resolution_m, "blocks": len(session.blocks)},
        request=request,
    )
    return _session_out(session)


@router.get("/{farm_id}/weekly-sessions/{session_uuid}")
def get_session(
    farm_id: int,
    session_uuid: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    allocator: SessionAllocator = Depends(get_allocator),
) -> SessionOut:
    load_owned_farm(db, farm_id, user_id)
    return _session_out(allocator.fetch_session(db, farm_id, session_uuid))


@router.post("/{farm_id}/weekly-sessions/{session_uuid}/submit")
def submit_session(
    farm_id: int,
    session_uuid: str,
    request: Request,
    payload: Optional[SessionSubmitIn] = Body(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    allocator: SessionAllocator = Depends(get_allocator),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> SessionSubmitOut:
    load_owned_farm(db, farm_id, user_id)
    session = allocator.fetch_session(db, farm_id, session_uuid)
    payload = payload or SessionSubmitIn()
    report = lifecycle.submit(
        db,
        session,
        notes=payload.notes,
        farmer_growth_stage=payload.farmer_growth_stage,
    )
    add_audit_log(
        db,
        "weekly_session_submitted",
        user_id=user_id,
        related_id=report.id,
        payload={"sessionUuid": session_uuid, "imageCount": len(report.image_ids)},
        request=request,
    )
    return SessionSubmitOut(
        session_uuid=session.session_uuid,
        report_id=report.id,
        status=session.status,
        image_ids=report.image_ids,
    )


@router.post("/{farm_id}/weekly-sessions/{session_uuid}/cancel")
def cancel_session(
    farm_id: int,
    session_uuid: str,
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    allocator: SessionAllocator = Depends(get_allocator),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> SessionOut:
    load_owned_farm(db, farm_id, user_id)
    session = lifecycle.cancel(db, allocator.fetch_session(db, farm_id, session_uuid))
    add_audit_log(
        db,
        "weekly_session_cancelled",
        user_id=user_id,
        related_id=session_uuid,
        payload={"farmId": farm_id},
        request=request,
    )
    return _session_out(session)
