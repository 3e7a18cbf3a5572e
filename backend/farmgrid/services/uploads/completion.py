# backend/farmgrid/services/uploads/completion.py
"""
Upload registration and completion.

``register_upload`` records the device-capture metadata before the file is
sent to object storage. ``complete_upload`` then pulls the embedded
metadata for the stored object, verifies it against the device metadata
(and the declared farm's boundary), creates the Image row and hands it to
the Block Linker. Both are keyed on the client's ``local_upload_id`` so a
retried request resolves to the same rows.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farmgrid.core.errors import BadRequestError, ForbiddenError, MissingCaptureMetadataError, NotFoundError
from farmgrid.core.logger import get_logger
from farmgrid.models.enums import UploadStatus, VerificationStatus
from farmgrid.models.farm import Farm
from farmgrid.models.image import Image
from farmgrid.models.sampling_session import SamplingSession
from farmgrid.models.session_block import SessionBlock
from farmgrid.models.upload import Upload
from farmgrid.services.farms.boundary import load_owned_farm
from farmgrid.services.geometry.engine import GeometryEngine, LatLon, to_lat_lon
from farmgrid.services.linking.linker import BlockLinker, LinkResult
from farmgrid.services.storage.metadata import ObjectMetadataSource
from farmgrid.services.verification.verifier import CaptureVerifier

log = get_logger("uploads")


@dataclass(frozen=True)
class CompletionResult:
    image: Image
    link: LinkResult
    replayed: bool = False

    @property
    def verification(self) -> str:
        return "verified" if self.image.verification_status == VerificationStatus.VERIFIED.value else "flagged"


def _declared_farm_id(meta: dict) -> Optional[int]:
    value = meta.get("farmId", meta.get("farm_id"))
    return int(value) if value is not None else None


def _declared_block_id(meta: dict) -> Optional[int]:
    value = meta.get("sessionBlockId", meta.get("session_block_id"))
    return int(value) if value is not None else None


class UploadService:
    def __init__(
        self,
        engine: GeometryEngine,
        verifier: CaptureVerifier,
        linker: BlockLinker,
        metadata_source: ObjectMetadataSource,
    ):
        self.engine = engine
        self.verifier = verifier
        self.linker = linker
        self.metadata_source = metadata_source

    def register_upload(
        self,
        db: Session,
        user_id: str,
        local_upload_id: str,
        device_meta: dict[str, Any],
        filename: Optional[str] = None,
    ) -> Upload:
        existing = db.query(Upload).filter(Upload.local_upload_id == local_upload_id).one_or_none()
        if existing:
            if existing.user_id and existing.user_id != user_id:
                raise ForbiddenError("Upload belongs to a different user")
            return existing

        farm_id = _declared_farm_id(device_meta)
        if farm_id is not None:
            load_owned_farm(db, farm_id, user_id)
        block_id = _declared_block_id(device_meta)
        if block_id is not None:
            self._check_block_owner(db, block_id, user_id, farm_id)

        upload = Upload(
            local_upload_id=local_upload_id,
            user_id=user_id,
            farm_id=farm_id,
            session_block_id=block_id,
            device_meta=device_meta,
            filename=filename,
            storage_object_ref=f"{user_id}/{local_upload_id}",
            status=UploadStatus.PENDING.value,
        )
        try:
            db.add(upload)
            db.commit()
        except IntegrityError:
            db.rollback()
            return db.query(Upload).filter(Upload.local_upload_id == local_upload_id).one()
        db.refresh(upload)
        log.info("Upload registered", extra={"local_upload_id": local_upload_id, "user_id": user_id})
        return upload

    def complete_upload(
        self,
        db: Session,
        user_id: str,
        local_upload_id: str,
        storage_object_ref: Optional[str] = None,
    ) -> CompletionResult:
        upload = db.query(Upload).filter(Upload.local_upload_id == local_upload_id).one_or_none()
        if not upload:
            raise NotFoundError("Upload not found", details={"localUploadId": local_upload_id})
        if upload.user_id and upload.user_id != user_id:
            raise ForbiddenError("Forbidden - upload belongs to different user")

        meta = upload.device_meta or {}
        if (
            meta.get("captureLat") is None
            or meta.get("captureLon") is None
            or not meta.get("captureTimestamp")
        ):
            self._fail(db, upload)
            raise MissingCaptureMetadataError("Device-capture metadata missing on server, upload rejected")

        image = db.query(Image).filter(Image.local_upload_id == local_upload_id).one_or_none()
        if image is not None:
            return self._replay(db, image, meta)

        farm: Optional[Farm] = None
        farm_id = _declared_farm_id(meta)
        if farm_id is not None:
            farm = load_owned_farm(db, farm_id, user_id)

        ref = storage_object_ref or upload.storage_object_ref
        explicit_block_id = _declared_block_id(meta)
        try:
            exif = self.metadata_source.fetch_metadata(ref)
            device = to_lat_lon(meta["captureLat"], meta["captureLon"])
            exif_pos = None
            if exif.get("lat") is not None and exif.get("lon") is not None:
                exif_pos = LatLon(lat=exif["lat"], lon=exif["lon"])
            outcome = self.verifier.verify(
                device,
                meta["captureTimestamp"],
                exif_pos,
                exif.get("timestamp"),
                farm_boundary=self.engine.from_geojson(farm.boundary) if farm else None,
            )
        except BadRequestError as e:
            log.warning(
                f"Upload rejected: {e.message}",
                extra={"local_upload_id": local_upload_id, "user_id": user_id, "code": e.code},
            )
            self._fail(db, upload)
            if explicit_block_id is not None:
                self.linker.record_failed_attempt(db, explicit_block_id, upload.user_id or user_id, farm_id)
            raise

        image = Image(
            user_id=upload.user_id or user_id,
            farm_id=farm.id if farm else None,
            upload_id=upload.id,
            local_upload_id=local_upload_id,
            storage_object_ref=ref,
            exif_raw=exif.get("raw") or {},
            exif_lat=exif_pos.lat,
            exif_lon=exif_pos.lon,
            exif_timestamp=outcome.exif_timestamp,
            capture_lat=device.lat,
            capture_lon=device.lon,
            capture_timestamp=outcome.device_timestamp,
            # 端末の撮影位置を優先
            geom=self.engine.dumps(device.as_point()),
            verification_status=outcome.status.value,
            verification_reason=outcome.reason,
            verification_distance_m=outcome.distance_m,
        )
        upload.status = UploadStatus.COMPLETED.value
        upload.storage_object_ref = ref
        try:
            db.add(image)
            db.add(upload)
            db.commit()
        except IntegrityError:
            # 同じ localUploadId の並行リトライが先に Image を作成した
            db.rollback()
            image = db.query(Image).filter(Image.local_upload_id == local_upload_id).one()
            return self._replay(db, image, meta)
        db.refresh(image)

        log.info(
            f"Image created ({outcome.label})",
            extra={
                "image_id": image.id,
                "local_upload_id": local_upload_id,
                "distance_m": round(outcome.distance_m, 2),
            },
        )
        link = self.linker.link_image_to_session(db, image.id, device, explicit_block_id)
        db.refresh(image)
        return CompletionResult(image=image, link=link)

    def _replay(self, db: Session, image: Image, meta: dict) -> CompletionResult:
        # 再送: 既存 Image を返す（未リンクならリンクのみ再試行）
        device = to_lat_lon(image.capture_lat, image.capture_lon)
        link = self.linker.link_image_to_session(db, image.id, device, _declared_block_id(meta))
        db.refresh(image)
        log.info("Upload completion replayed", extra={"image_id": image.id, "local_upload_id": image.local_upload_id})
        return CompletionResult(image=image, link=link, replayed=True)

    def _check_block_owner(self, db: Session, block_id: int, user_id: str, farm_id: Optional[int]) -> None:
        session = (
            db.query(SamplingSession)
            .join(SessionBlock, SessionBlock.session_id == SamplingSession.id)
            .filter(SessionBlock.id == block_id)
            .one_or_none()
        )
        if session is None:
            raise NotFoundError("Session block not found", details={"sessionBlockId": block_id})
        if session.user_id != user_id or (farm_id is not None and session.farm_id != farm_id):
            raise ForbiddenError(
                "Session block belongs to a different user or farm",
                details={"sessionBlockId": block_id},
            )

    def _fail(self, db: Session, upload: Upload) -> None:
        upload.status = UploadStatus.FAILED.value
        db.add(upload)
        db.commit()
