# backend/farmgrid/services/audit/log.py
"""
Audit trail.

``add_audit_log`` records one row per business event (session started,
farm updated, upload rejected, ...). It never raises: a failed audit write
is logged and rolled back so the request that triggered it still succeeds.
Call it after the caller's own commit so the rollback cannot discard
business data.
"""
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from farmgrid.core.logger import get_logger
from farmgrid.models.audit_log import AuditLog

log = get_logger("audit")


def add_audit_log(
    db: Session,
    event_type: str,
    *,
    user_id: Optional[str] = None,
    related_id: Any = None,
    payload: Optional[dict] = None,
    request: Optional[Request] = None,
) -> Optional[AuditLog]:
    row = AuditLog(
        event_type=event_type,
        user_id=user_id,
        related_id=str(related_id) if related_id is not None else None,
        payload=payload,
        ip=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Audit log write failed", extra={"event_type": event_type, "user_id": user_id})
        return None
    return row
