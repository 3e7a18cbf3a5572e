# backend/farmgrid/services/linking/linker.py
"""
Block Linker.

Attaches a verified image to exactly one open SessionBlock. Every claim is
a single-row conditional UPDATE guarded by ``image_id IS NULL``; a zero
rowcount means another transaction won the block. Spatial candidates are
selected ``FOR UPDATE SKIP LOCKED`` on PostgreSQL so uploads landing in
different cells never wait on each other.

Outcomes are returned as ``LinkResult`` values, never raised.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from farmgrid.core.errors import NotFoundError
from farmgrid.core.logger import get_logger
from farmgrid.models.base import utcnow
from farmgrid.models.enums import BlockStatus, SessionStatus, VerificationStatus
from farmgrid.models.image import Image
from farmgrid.models.sampling_session import SamplingSession
from farmgrid.models.session_block import SessionBlock
from farmgrid.services.geometry.engine import GeometryEngine, LatLon

log = get_logger("linking")


class LinkCode(str, Enum):
    LINKED_AND_VERIFIED = "linked_and_verified"
    LINKED_BUT_FLAGGED = "linked_but_flagged"
    EXPLICIT_BLOCK_ALREADY_TAKEN = "explicit_block_already_taken"
    SPATIAL_CONFLICT = "spatial_conflict"
    SPATIAL_NO_MATCH = "spatial_no_match"
    EXPLICIT_LINK_ERROR = "explicit_link_error"
    SPATIAL_LINK_ERROR = "spatial_link_error"


LINKED_CODES = (LinkCode.LINKED_AND_VERIFIED, LinkCode.LINKED_BUT_FLAGGED)


@dataclass(frozen=True)
class LinkResult:
    code: LinkCode
    block_id: Optional[int] = None
    detail: Optional[str] = None

    @property
    def linked(self) -> bool:
        return self.code in LINKED_CODES


def _block_status_for(verification_status: str) -> str:
    if verification_status == VerificationStatus.VERIFIED.value:
        return BlockStatus.COMPLETED.value
    return BlockStatus.FLAGGED.value


def _code_for(block: SessionBlock) -> LinkCode:
    if block.status == BlockStatus.COMPLETED.value:
        return LinkCode.LINKED_AND_VERIFIED
    return LinkCode.LINKED_BUT_FLAGGED


class BlockLinker:
    def __init__(
        self,
        engine: GeometryEngine,
        *,
        max_attempts: int = 4,
        fallback_on_explicit_conflict: bool = False,
    ):
        self.engine = engine
        self.max_attempts = max_attempts
        self.fallback_on_explicit_conflict = fallback_on_explicit_conflict

    def link_image_to_session(
        self,
        db: Session,
        image_id: int,
        device_position: LatLon,
        explicit_block_id: Optional[int] = None,
    ) -> LinkResult:
        """
        Link ``image_id`` (whose verification fields are already recorded)
        to one open block.

        An explicit block reference is authoritative: when it is already
        taken the spatial fallback runs only if ``fallback_on_explicit_conflict``.
        Relinking an image that already holds a block returns that link.
        """
        image = db.get(Image, image_id)
        if image is None:
            raise NotFoundError("Image not found", details={"imageId": image_id})

        if image.session_block_id is not None:
            block = db.get(SessionBlock, image.session_block_id)
            if block is not None and block.image_id == image.id:
                return LinkResult(_code_for(block), block.id, "already linked")

        if explicit_block_id is not None:
            result = self._link_explicit(db, image, explicit_block_id)
            fall_through = (
                result.code is LinkCode.EXPLICIT_BLOCK_ALREADY_TAKEN and self.fallback_on_explicit_conflict
            )
            if not fall_through:
                self._log(image, result)
                return result

        result = self._link_spatial(db, image, device_position)
        self._log(image, result)
        return result

    def record_failed_attempt(
        self,
        db: Session,
        block_id: int,
        user_id: str,
        farm_id: Optional[int] = None,
    ) -> bool:
        """
        Count a rejected upload against an open block of one of ``user_id``'s
        ACTIVE sessions (and ``farm_id``'s, when given). Blocks owned by
        anybody else are left untouched.
        """
        active = select(SamplingSession.id).where(
            SamplingSession.status == SessionStatus.ACTIVE.value,
            SamplingSession.user_id == user_id,
        )
        if farm_id is not None:
            active = active.where(SamplingSession.farm_id == farm_id)
        stmt = (
            update(SessionBlock)
            .where(
                SessionBlock.id == block_id,
                SessionBlock.image_id.is_(None),
                SessionBlock.session_id.in_(active),
            )
            .values(attempts=SessionBlock.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            res = db.execute(stmt)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            log.exception("Failed to record block attempt", extra={"block_id": block_id})
            return False
        return res.rowcount == 1

    # --- internals ---

    def _claim(self, db: Session, block_id: int, image: Image) -> bool:
        # imageId が NULL の行だけを更新する。0 行なら他者が先に確保済み
        outcome_status = _block_status_for(image.verification_status)
        stmt = (
            update(SessionBlock)
            .where(SessionBlock.id == block_id, SessionBlock.image_id.is_(None))
            .values(
                image_id=image.id,
                attempts=SessionBlock.attempts + 1,
                status=case(
                    (SessionBlock.attempts + 1 >= self.max_attempts, BlockStatus.FAILED.value),
                    else_=outcome_status,
                ),
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        res = db.execute(stmt)
        if res.rowcount != 1:
            db.rollback()
            return False
        image.session_block_id = block_id
        db.add(image)
        db.commit()
        return True

    def _link_explicit(self, db: Session, image: Image, block_id: int) -> LinkResult:
        image_id = image.id
        try:
            row = (
                db.query(SessionBlock, SamplingSession)
                .join(SamplingSession, SessionBlock.session_id == SamplingSession.id)
                .filter(SessionBlock.id == block_id)
                .one_or_none()
            )
            if row is None:
                return LinkResult(LinkCode.EXPLICIT_LINK_ERROR, None, "session block not found")
            block, session = row
            if session.status != SessionStatus.ACTIVE.value:
                return LinkResult(LinkCode.EXPLICIT_LINK_ERROR, block.id, "session not active")
            if image.farm_id is not None and session.farm_id != image.farm_id:
                return LinkResult(LinkCode.EXPLICIT_LINK_ERROR, block.id, "block belongs to another farm")
            if image.user_id is not None and session.user_id != image.user_id:
                return LinkResult(LinkCode.EXPLICIT_LINK_ERROR, block.id, "block belongs to another user")
            if block.image_id is not None or not self._claim(db, block.id, image):
                return LinkResult(LinkCode.EXPLICIT_BLOCK_ALREADY_TAKEN, block.id)
            db.refresh(block)
            return LinkResult(_code_for(block), block.id)
        except SQLAlchemyError as e:
            db.rollback()
            log.exception("Explicit block link failed", extra={"image_id": image_id, "block_id": block_id})
            return LinkResult(LinkCode.EXPLICIT_LINK_ERROR, block_id, str(e.__class__.__name__))

    def _candidates(self, db: Session, image: Image, point: LatLon) -> Query:
        q = (
            db.query(SessionBlock)
            .join(SamplingSession, SessionBlock.session_id == SamplingSession.id)
            .filter(
                SamplingSession.status == SessionStatus.ACTIVE.value,
                SessionBlock.min_lon <= point.lon,
                SessionBlock.max_lon >= point.lon,
                SessionBlock.min_lat <= point.lat,
                SessionBlock.max_lat >= point.lat,
            )
        )
        if image.farm_id is not None:
            q = q.filter(SamplingSession.farm_id == image.farm_id)
        if image.user_id is not None:
            q = q.filter(SamplingSession.user_id == image.user_id)
        return q.order_by(SessionBlock.id.asc())

    def _contains(self, block: SessionBlock, point: LatLon) -> bool:
        return self.engine.contains(self.engine.from_geojson(block.geom), point)

    def _link_spatial(self, db: Session, image: Image, point: LatLon) -> LinkResult:
        image_id = image.id
        try:
            # bbox で SQL 側を絞り込み、凍結形状で厳密判定
            open_blocks = (
                self._candidates(db, image, point)
                .filter(SessionBlock.image_id.is_(None))
                .with_for_update(skip_locked=True, of=SessionBlock)
                .all()
            )
            match = next((b for b in open_blocks if self._contains(b, point)), None)
            if match is None:
                db.rollback()
                # ロック中・確保済みのブロックが点を含むなら競合
                taken = [b for b in self._candidates(db, image, point).all() if self._contains(b, point)]
                if taken:
                    return LinkResult(LinkCode.SPATIAL_CONFLICT, taken[0].id)
                return LinkResult(LinkCode.SPATIAL_NO_MATCH)
            if not self._claim(db, match.id, image):
                return LinkResult(LinkCode.SPATIAL_CONFLICT, match.id)
            db.refresh(match)
            return LinkResult(_code_for(match), match.id)
        except SQLAlchemyError as e:
            db.rollback()
            log.exception("Spatial block link failed", extra={"image_id": image_id})
            return LinkResult(LinkCode.SPATIAL_LINK_ERROR, None, str(e.__class__.__name__))

    def _log(self, image: Image, result: LinkResult) -> None:
        log.info(
            f"Block link outcome {result.code.value}",
            extra={"image_id": image.id, "block_id": result.block_id, "code": result.code.value},
        )
