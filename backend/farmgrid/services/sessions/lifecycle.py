# backend/farmgrid/services/sessions/lifecycle.py
from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from farmgrid.core.errors import NoCompletedBlocksError, SessionStateError
from farmgrid.core.logger import get_logger
from farmgrid.models.base import utcnow
from farmgrid.models.enums import BlockStatus, SessionStatus
from farmgrid.models.image import Image
from farmgrid.models.report import Report
from farmgrid.models.sampling_session import SamplingSession

log = get_logger("sessions")


class ReportSink(Protocol):
    """Downstream report/aggregation collaborator."""

    def create_report(
        self,
        db: Session,
        session: SamplingSession,
        image_ids: list[int],
        notes: Optional[str] = None,
        farmer_growth_stage: Optional[str] = None,
    ) -> Report: ...


class DatabaseReportSink:
    """Stores the hand-off in the ``reports`` table; scoring happens elsewhere."""

    def create_report(self, db, session, image_ids, notes=None, farmer_growth_stage=None) -> Report:
        report = Report(
            farm_id=session.farm_id,
            user_id=session.user_id,
            session_uuid=session.session_uuid,
            image_ids=list(image_ids),
            farmer_growth_stage=farmer_growth_stage,
            summary={
                "blocks": len(session.blocks),
                "completedBlocks": sum(1 for b in session.blocks if b.status == BlockStatus.COMPLETED.value),
                "flaggedBlocks": sum(1 for b in session.blocks if b.status == BlockStatus.FLAGGED.value),
                "failedBlocks": sum(1 for b in session.blocks if b.status == BlockStatus.FAILED.value),
                "notes": notes,
            },
        )
        db.add(report)
        db.flush()
        return report


class SessionLifecycle:
    """ACTIVE --submit--> COMPLETED, ACTIVE --cancel--> CANCELLED. Both terminal."""

    def __init__(self, report_sink: ReportSink):
        self.report_sink = report_sink

    def _transition(self, db: Session, session: SamplingSession, to_status: SessionStatus, **values) -> None:
        # ACTIVE の行だけを遷移させる。0 行なら並行リクエストが先に遷移済み
        res = db.execute(
            update(SamplingSession)
            .where(SamplingSession.id == session.id, SamplingSession.status == SessionStatus.ACTIVE.value)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            raise SessionStateError(
                "Session is not active",
                details={"sessionUuid": session.session_uuid, "status": session.status},
            )

    def submit(
        self,
        db: Session,
        session: SamplingSession,
        notes: Optional[str] = None,
        farmer_growth_stage: Optional[str] = None,
    ) -> Report:
        """
        Close an ACTIVE session and hand its images to the report sink.

        Requires at least one COMPLETED block. The hand-off carries every
        linked image, FLAGGED and FAILED blocks included, so the downstream
        aggregation can weigh or discard them itself; the report summary
        keeps the per-status counts. A sink that should only see verified
        photos can filter on ``Image.verification_status``.
        """
        if session.status != SessionStatus.ACTIVE.value:
            raise SessionStateError(
                f"Session is {session.status}, only ACTIVE sessions can be submitted",
                details={"sessionUuid": session.session_uuid, "status": session.status},
            )
        completed = [
            b for b in session.blocks if b.status == BlockStatus.COMPLETED.value and b.image_id is not None
        ]
        if not completed:
            raise NoCompletedBlocksError(
                "Session has no completed blocks; upload at least one verified photo before submitting",
                details={"sessionUuid": session.session_uuid},
            )
        image_ids = [b.image_id for b in session.blocks if b.image_id is not None]

        self._transition(db, session, SessionStatus.COMPLETED, completed_at=utcnow(), notes=notes)
        report = self.report_sink.create_report(db, session, image_ids, notes, farmer_growth_stage)
        db.execute(
            update(SamplingSession)
            .where(SamplingSession.id == session.id)
            .values(report_id=report.id)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(Image)
            .where(Image.id.in_(image_ids))
            .values(report_id=report.id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(session)

        log.info(
            "Session submitted",
            extra={"session_id": session.session_uuid, "farm_id": session.farm_id, "count": len(image_ids)},
        )
        return report

    def cancel(self, db: Session, session: SamplingSession) -> SamplingSession:
        if session.status != SessionStatus.ACTIVE.value:
            raise SessionStateError(
                f"Session is {session.status}, only ACTIVE sessions can be cancelled",
                details={"sessionUuid": session.session_uuid, "status": session.status},
            )
        self._transition(db, session, SessionStatus.CANCELLED, cancelled_at=utcnow())
        db.commit()
        db.refresh(session)
        log.info("Session cancelled", extra={"session_id": session.session_uuid, "farm_id": session.farm_id})
        return session
