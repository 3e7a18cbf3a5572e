from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from farmgrid.api.deps import get_upload_service
from farmgrid.core.auth import get_current_user_id
from farmgrid.core.errors import BadRequestError
from farmgrid.db import get_db
from farmgrid.schemas.upload import (
    ExifOut,
    UploadCompleteIn,
    UploadCompleteOut,
    UploadRegisterIn,
    UploadRegisterOut,
)
from farmgrid.services.audit.log import add_audit_log
from farmgrid.services.uploads.completion import UploadService

router = APIRouter()


@router.post("", status_code=201)
@router.post("/", status_code=201)
def register_upload(
    payload: UploadRegisterIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    uploads: UploadService = Depends(get_upload_service),
) -> UploadRegisterOut:
    upload = uploads.register_upload(
        db,
        user_id,
        payload.local_upload_id,
        payload.device_meta(),
        filename=payload.filename,
    )
    return UploadRegisterOut(
        upload_id=upload.id,
        local_upload_id=upload.local_upload_id,
        storage_object_ref=upload.storage_object_ref,
        status=upload.status,
    )


@router.post("/complete")
def complete_upload(
    payload: UploadCompleteIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    uploads: UploadService = Depends(get_upload_service),
) -> UploadCompleteOut:
    try:
        result = uploads.complete_upload(db, user_id, payload.local_upload_id, payload.storage_object_ref)
    except BadRequestError as e:
        add_audit_log(
            db,
            "upload_rejected",
            user_id=user_id,
            related_id=payload.local_upload_id,
            payload={"code": e.code, "message": e.message},
            request=request,
        )
        raise
    image = result.image
    if not result.replayed:
        add_audit_log(
            db,
            "upload_completed",
            user_id=user_id,
            related_id=image.id,
            payload={
                "localUploadId": payload.local_upload_id,
                "verification": result.verification,
                "linkCode": result.link.code.value,
                "sessionBlockId": result.link.block_id,
            },
            request=request,
        )
    return UploadCompleteOut(
        image_id=image.id,
        verification=result.verification,
        verification_reason=image.verification_reason,
        distance_meters=image.verification_distance_m,
        linked_session_block_id=image.session_block_id,
        link_code=result.link.code.value,
        link_detail=result.link.detail,
        exif=ExifOut(lat=image.exif_lat, lon=image.exif_lon, timestamp=image.exif_timestamp),
        replayed=result.replayed,
    )
