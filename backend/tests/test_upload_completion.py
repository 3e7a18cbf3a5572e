import random

import pytest

from farmgrid.core.errors import ForbiddenError, MissingCaptureMetadataError, NotFoundError, TimestampParseError
from farmgrid.models import Image, SessionBlock, Upload
from farmgrid.services.linking.linker import BlockLinker, LinkCode
from farmgrid.services.sampling.allocator import SessionAllocator
from farmgrid.services.uploads.completion import UploadService
from farmgrid.services.verification.verifier import CaptureVerifier

from conftest import CENTER_LAT, CENTER_LON, DEVICE_TS, USER_ID


@pytest.fixture
def uploads(geometry, metadata_source):
    return UploadService(geometry, CaptureVerifier(geometry), BlockLinker(geometry), metadata_source)


@pytest.fixture
def session_setup(db, make_farm, grid_builder):
    farm = make_farm(400)
    session = SessionAllocator(grid_builder, rng=random.Random(5)).start_session(db, USER_ID, farm)
    return farm, session


def _meta(lat, lon, farm_id=None, block_id=None, ts=DEVICE_TS):
    meta = {"captureLat": lat, "captureLon": lon, "captureTimestamp": ts}
    if farm_id is not None:
        meta["farmId"] = farm_id
    if block_id is not None:
        meta["sessionBlockId"] = block_id
    return meta


def test_complete_upload_verifies_and_links_explicit_block(db, uploads, metadata_source, session_setup):
    farm, session = session_setup
    block = session.blocks[0]
    upload = uploads.register_upload(
        db, USER_ID, "u-1", _meta(block.centroid_lat, block.centroid_lon, farm.id, block.id), "leaf.jpg"
    )
    assert upload.status == "PENDING"
    assert upload.storage_object_ref == f"{USER_ID}/u-1"
    metadata_source.put(upload.storage_object_ref, block.centroid_lat + 0.00005, block.centroid_lon)

    result = uploads.complete_upload(db, USER_ID, "u-1")

    assert result.verification == "verified"
    assert result.image.verification_reason == "EXIF matches device-capture | exif point inside farm boundary"
    assert result.image.verification_distance_m < 10
    assert result.image.farm_id == farm.id
    assert result.link.code is LinkCode.LINKED_AND_VERIFIED
    assert result.link.block_id == block.id
    assert result.image.session_block_id == block.id
    assert not result.replayed
    db.refresh(upload)
    assert upload.status == "COMPLETED"


def test_retried_completion_returns_same_image(db, uploads, metadata_source, session_setup):
    farm, session = session_setup
    block = session.blocks[0]
    uploads.register_upload(db, USER_ID, "u-2", _meta(block.centroid_lat, block.centroid_lon, farm.id, block.id))
    metadata_source.put(f"{USER_ID}/u-2", block.centroid_lat, block.centroid_lon)

    first = uploads.complete_upload(db, USER_ID, "u-2")
    again = uploads.complete_upload(db, USER_ID, "u-2")

    assert again.replayed
    assert again.image.id == first.image.id
    assert again.link.code is LinkCode.LINKED_AND_VERIFIED
    assert db.query(Image).count() == 1
    assert db.get(SessionBlock, block.id).attempts == 1


def test_register_is_idempotent_per_local_id(db, uploads):
    a = uploads.register_upload(db, USER_ID, "u-3", _meta(CENTER_LAT, CENTER_LON))
    b = uploads.register_upload(db, USER_ID, "u-3", _meta(CENTER_LAT, CENTER_LON))
    assert a.id == b.id
    assert db.query(Upload).count() == 1


def test_missing_device_metadata_rejects_upload(db, uploads, metadata_source):
    uploads.register_upload(db, USER_ID, "u-4", {"captureLat": CENTER_LAT})
    metadata_source.put(f"{USER_ID}/u-4", CENTER_LAT, CENTER_LON)

    with pytest.raises(MissingCaptureMetadataError):
        uploads.complete_upload(db, USER_ID, "u-4")

    assert db.query(Upload).one().status == "FAILED"
    assert db.query(Image).count() == 0


def test_missing_exif_gps_fails_and_counts_attempt(db, uploads, metadata_source, session_setup):
    farm, session = session_setup
    block = session.blocks[0]
    uploads.register_upload(db, USER_ID, "u-5", _meta(block.centroid_lat, block.centroid_lon, farm.id, block.id))
    metadata_source.put(f"{USER_ID}/u-5", None, None)

    with pytest.raises(MissingCaptureMetadataError):
        uploads.complete_upload(db, USER_ID, "u-5")

    assert db.query(Upload).one().status == "FAILED"
    assert db.query(Image).count() == 0
    refreshed = db.get(SessionBlock, block.id)
    db.refresh(refreshed)
    assert refreshed.attempts == 1
    assert refreshed.image_id is None


def test_unparsable_exif_timestamp_is_rejected(db, uploads, metadata_source):
    uploads.register_upload(db, USER_ID, "u-6", _meta(CENTER_LAT, CENTER_LON))
    metadata_source.put(f"{USER_ID}/u-6", CENTER_LAT, CENTER_LON, timestamp="yesterday-ish")

    with pytest.raises(TimestampParseError):
        uploads.complete_upload(db, USER_ID, "u-6")
    assert db.query(Image).count() == 0


def test_missing_stored_object_is_not_found(db, uploads):
    uploads.register_upload(db, USER_ID, "u-7", _meta(CENTER_LAT, CENTER_LON))
    with pytest.raises(NotFoundError):
        uploads.complete_upload(db, USER_ID, "u-7")
    with pytest.raises(NotFoundError):
        uploads.complete_upload(db, USER_ID, "never-registered")


def test_uploads_are_scoped_to_owner(db, uploads, make_farm):
    farm = make_farm(400, user_id="someone-else")
    with pytest.raises(ForbiddenError):
        uploads.register_upload(db, USER_ID, "u-8", _meta(CENTER_LAT, CENTER_LON, farm.id))

    uploads.register_upload(db, "someone-else", "u-9", _meta(CENTER_LAT, CENTER_LON, farm.id))
    with pytest.raises(ForbiddenError):
        uploads.complete_upload(db, USER_ID, "u-9")
    with pytest.raises(ForbiddenError):
        uploads.register_upload(db, USER_ID, "u-9", _meta(CENTER_LAT, CENTER_LON))


def test_distant_exif_links_but_flagged(db, uploads, metadata_source, session_setup):
    farm, session = session_setup
    block = session.blocks[1]
    uploads.register_upload(db, USER_ID, "u-10", _meta(block.centroid_lat, block.centroid_lon, farm.id, block.id))
    # 約 200 m 北
    metadata_source.put(f"{USER_ID}/u-10", block.centroid_lat + 0.0018, block.centroid_lon)

    result = uploads.complete_upload(db, USER_ID, "u-10")

    assert result.verification == "flagged"
    assert result.image.verification_distance_m > 190
    assert result.link.code is LinkCode.LINKED_BUT_FLAGGED
    db.refresh(block)
    assert block.status == "FLAGGED"


def test_capture_outside_farm_is_flagged_and_unlinked(db, uploads, metadata_source, session_setup):
    farm, _ = session_setup
    lat, lon = CENTER_LAT + 0.02, CENTER_LON
    uploads.register_upload(db, USER_ID, "u-11", _meta(lat, lon, farm.id))
    metadata_source.put(f"{USER_ID}/u-11", lat, lon)

    result = uploads.complete_upload(db, USER_ID, "u-11")

    assert result.verification == "flagged"
    assert "exif point outside farm boundary" in result.image.verification_reason
    assert result.link.code is LinkCode.SPATIAL_NO_MATCH
    assert result.image.session_block_id is None


def test_block_from_another_users_session_is_refused_at_registration(db, uploads, make_farm, grid_builder):
    farm = make_farm(400, user_id="neighbour")
    session = SessionAllocator(grid_builder, rng=random.Random(9)).start_session(db, "neighbour", farm)
    block = session.blocks[0]

    with pytest.raises(ForbiddenError):
        uploads.register_upload(db, USER_ID, "u-12", _meta(block.centroid_lat, block.centroid_lon, block_id=block.id))
    with pytest.raises(NotFoundError):
        uploads.register_upload(db, USER_ID, "u-13", _meta(CENTER_LAT, CENTER_LON, block_id=999_999))
    assert db.query(Upload).count() == 0


def test_rejected_uploads_cannot_exhaust_another_users_block(db, uploads, metadata_source, make_farm, grid_builder):
    farm = make_farm(400, user_id="neighbour")
    session = SessionAllocator(grid_builder, rng=random.Random(9)).start_session(db, "neighbour", farm)
    block = session.blocks[0]
    for i in range(4):
        # 登録チェックを経ずに保存された行でも他人のブロックは数えない
        local_id = f"stray-{i}"
        db.add(
            Upload(
                local_upload_id=local_id,
                user_id=USER_ID,
                session_block_id=block.id,
                device_meta=_meta(block.centroid_lat, block.centroid_lon, block_id=block.id),
                storage_object_ref=f"{USER_ID}/{local_id}",
            )
        )
        db.commit()
        metadata_source.put(f"{USER_ID}/{local_id}", None, None)
        with pytest.raises(MissingCaptureMetadataError):
            uploads.complete_upload(db, USER_ID, local_id)

    db.refresh(block)
    assert block.attempts == 0
    assert block.status == "PENDING"
