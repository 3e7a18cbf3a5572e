import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from farmgrid.core.errors import NotFoundError
from farmgrid.models import Base, Image, SessionBlock
from farmgrid.models.enums import VerificationStatus
from farmgrid.services.farms.boundary import BoundaryService
from farmgrid.services.geometry.engine import LatLon, ShapelyGeometryEngine
from farmgrid.services.grid.builder import GridBuilder
from farmgrid.services.linking.linker import BlockLinker, LinkCode
from farmgrid.services.sampling.allocator import SessionAllocator
from farmgrid.services.sessions.lifecycle import DatabaseReportSink, SessionLifecycle

from conftest import CENTER_LAT, CENTER_LON, USER_ID, square_polygon


@pytest.fixture
def linker(geometry):
    return BlockLinker(geometry, max_attempts=4)


@pytest.fixture
def session_setup(db, make_farm, grid_builder):
    farm = make_farm(400)
    session = SessionAllocator(grid_builder, rng=random.Random(3)).start_session(db, USER_ID, farm)
    return farm, session


def _centroid(block: SessionBlock) -> LatLon:
    return LatLon(lat=block.centroid_lat, lon=block.centroid_lon)


def test_explicit_link_verified(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    image = make_image(farm, block.centroid_lat, block.centroid_lon)

    result = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)

    assert result.code is LinkCode.LINKED_AND_VERIFIED
    assert result.linked
    assert result.block_id == block.id
    db.refresh(block)
    db.refresh(image)
    assert block.image_id == image.id
    assert block.status == "COMPLETED"
    assert block.attempts == 1
    assert block.completed_at is not None
    assert image.session_block_id == block.id


def test_explicit_link_flagged(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[1]
    image = make_image(farm, block.centroid_lat, block.centroid_lon, status=VerificationStatus.FLAGGED)

    result = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)

    assert result.code is LinkCode.LINKED_BUT_FLAGGED
    db.refresh(block)
    assert block.status == "FLAGGED"


def test_explicit_block_already_taken(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    first = make_image(farm, block.centroid_lat, block.centroid_lon)
    second = make_image(farm, block.centroid_lat, block.centroid_lon)

    linker.link_image_to_session(db, first.id, _centroid(block), explicit_block_id=block.id)
    result = linker.link_image_to_session(db, second.id, _centroid(block), explicit_block_id=block.id)

    assert result.code is LinkCode.EXPLICIT_BLOCK_ALREADY_TAKEN
    assert not result.linked
    db.refresh(block)
    db.refresh(second)
    assert block.image_id == first.id
    assert block.attempts == 1
    assert second.session_block_id is None


def test_many_uploads_racing_for_one_block_have_one_winner(session_factory, db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[2]
    images = [make_image(farm, block.centroid_lat, block.centroid_lon) for _ in range(5)]

    results = []
    for image in images:
        # 各アップロードは別セッション（別ワーカー）で処理される
        worker = session_factory()
        try:
            results.append(linker.link_image_to_session(worker, image.id, _centroid(block), explicit_block_id=block.id))
        finally:
            worker.close()

    winners = [r for r in results if r.linked]
    assert len(winners) == 1
    assert all(r.code is LinkCode.EXPLICIT_BLOCK_ALREADY_TAKEN for r in results if not r.linked)
    db.refresh(block)
    assert block.image_id == images[results.index(winners[0])].id


def test_explicit_conflict_falls_back_to_spatial_when_enabled(db, geometry, session_setup, make_image):
    farm, session = session_setup
    taken, other = session.blocks[0], session.blocks[1]
    linker = BlockLinker(geometry, fallback_on_explicit_conflict=True)
    first = make_image(farm, taken.centroid_lat, taken.centroid_lon)
    linker.link_image_to_session(db, first.id, _centroid(taken), explicit_block_id=taken.id)

    second = make_image(farm, other.centroid_lat, other.centroid_lon)
    result = linker.link_image_to_session(db, second.id, _centroid(other), explicit_block_id=taken.id)

    assert result.code is LinkCode.LINKED_AND_VERIFIED
    assert result.block_id == other.id


def test_relinking_same_pair_is_idempotent(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    image = make_image(farm, block.centroid_lat, block.centroid_lon)

    first = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)
    again = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)

    assert first.code is again.code is LinkCode.LINKED_AND_VERIFIED
    assert again.block_id == block.id
    db.refresh(block)
    assert block.attempts == 1


def test_spatial_link_by_device_position(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[3]
    image = make_image(farm, block.centroid_lat, block.centroid_lon)

    result = linker.link_image_to_session(db, image.id, _centroid(block))

    assert result.code is LinkCode.LINKED_AND_VERIFIED
    assert result.block_id == block.id


def test_spatial_no_match_outside_session_cells(db, linker, session_setup, make_image):
    farm, _ = session_setup
    image = make_image(farm, CENTER_LAT + 0.05, CENTER_LON)

    result = linker.link_image_to_session(db, image.id, LatLon(CENTER_LAT + 0.05, CENTER_LON))

    assert result.code is LinkCode.SPATIAL_NO_MATCH
    assert result.block_id is None


def test_spatial_conflict_when_containing_block_is_claimed(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    first = make_image(farm, block.centroid_lat, block.centroid_lon)
    linker.link_image_to_session(db, first.id, _centroid(block))

    second = make_image(farm, block.centroid_lat, block.centroid_lon)
    result = linker.link_image_to_session(db, second.id, _centroid(block))

    assert result.code is LinkCode.SPATIAL_CONFLICT
    assert result.block_id == block.id


def test_spatial_ignores_other_users_sessions(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    image = make_image(farm, block.centroid_lat, block.centroid_lon, user_id="someone-else")

    result = linker.link_image_to_session(db, image.id, _centroid(block))

    assert result.code is LinkCode.SPATIAL_NO_MATCH


def test_explicit_block_in_inactive_session(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    SessionLifecycle(DatabaseReportSink()).cancel(db, session)
    image = make_image(farm, block.centroid_lat, block.centroid_lon)

    result = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)

    assert result.code is LinkCode.EXPLICIT_LINK_ERROR
    assert result.detail == "session not active"


def test_explicit_block_unknown_or_foreign(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    image = make_image(farm, block.centroid_lat, block.centroid_lon)
    stranger = make_image(farm, block.centroid_lat, block.centroid_lon, user_id="someone-else")

    missing = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=999_999)
    foreign = linker.link_image_to_session(db, stranger.id, _centroid(block), explicit_block_id=block.id)

    assert missing.code is LinkCode.EXPLICIT_LINK_ERROR
    assert missing.detail == "session block not found"
    assert foreign.code is LinkCode.EXPLICIT_LINK_ERROR
    assert foreign.detail == "block belongs to another user"


def test_attempts_cap_abandons_block(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    for _ in range(3):
        assert linker.record_failed_attempt(db, block.id, USER_ID)
    image = make_image(farm, block.centroid_lat, block.centroid_lon)

    result = linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)

    db.refresh(block)
    assert block.attempts == 4
    assert block.status == "FAILED"
    assert block.image_id == image.id
    assert result.code is LinkCode.LINKED_BUT_FLAGGED


def test_failed_attempts_are_not_counted_on_claimed_blocks(db, linker, session_setup, make_image):
    farm, session = session_setup
    block = session.blocks[0]
    image = make_image(farm, block.centroid_lat, block.centroid_lon)
    linker.link_image_to_session(db, image.id, _centroid(block), explicit_block_id=block.id)

    assert linker.record_failed_attempt(db, block.id, USER_ID) is False
    db.refresh(block)
    assert block.attempts == 1


def test_unknown_image_raises(db, linker):
    with pytest.raises(NotFoundError):
        linker.link_image_to_session(db, 12345, LatLon(CENTER_LAT, CENTER_LON))


def test_failed_attempts_only_count_against_own_blocks(db, linker, session_setup, make_farm):
    farm, session = session_setup
    block = session.blocks[0]
    other_farm = make_farm(400, center_lat=CENTER_LAT + 0.01)

    assert linker.record_failed_attempt(db, block.id, "someone-else") is False
    assert linker.record_failed_attempt(db, block.id, USER_ID, farm_id=other_farm.id) is False
    db.refresh(block)
    assert block.attempts == 0

    assert linker.record_failed_attempt(db, block.id, USER_ID, farm_id=farm.id) is True
    db.refresh(block)
    assert block.attempts == 1


@pytest.fixture
def file_session_factory(tmp_path):
    # スレッドごとに別接続を張るためファイル DB を使う
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _seed_race(factory, contenders):
    geometry = ShapelyGeometryEngine(min_cell_area_m2=1.0)
    grid_builder = GridBuilder(geometry)
    db = factory()
    try:
        farm = BoundaryService(geometry, grid_builder).create_farm(
            db, USER_ID, "North field", square_polygon(400), grid_resolution_m=100
        )
        session = SessionAllocator(grid_builder, rng=random.Random(3)).start_session(db, USER_ID, farm)
        block = session.blocks[0]
        images = []
        for i in range(contenders):
            image = Image(
                user_id=USER_ID,
                farm_id=farm.id,
                local_upload_id=f"race-{i}",
                storage_object_ref=f"{USER_ID}/race-{i}",
                exif_lat=block.centroid_lat,
                exif_lon=block.centroid_lon,
                capture_lat=block.centroid_lat,
                capture_lon=block.centroid_lon,
                verification_status=VerificationStatus.VERIFIED.value,
            )
            db.add(image)
            images.append(image)
        db.commit()
        return block.id, _centroid(block), [image.id for image in images]
    finally:
        db.close()


def _race(factory, image_ids, point, explicit_block_id=None):
    barrier = threading.Barrier(len(image_ids))

    def contend(image_id):
        db = factory()
        try:
            linker = BlockLinker(ShapelyGeometryEngine(min_cell_area_m2=1.0), max_attempts=4)
            barrier.wait(timeout=10)
            return image_id, linker.link_image_to_session(db, image_id, point, explicit_block_id=explicit_block_id)
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=len(image_ids)) as pool:
        return list(pool.map(contend, image_ids))


@pytest.mark.parametrize("explicit", [True, False])
def test_concurrent_claims_on_one_block_have_a_single_winner(file_session_factory, explicit):
    block_id, point, image_ids = _seed_race(file_session_factory, contenders=6)

    outcomes = _race(file_session_factory, image_ids, point, explicit_block_id=block_id if explicit else None)

    winners = [image_id for image_id, result in outcomes if result.linked]
    assert len(winners) == 1
    loser_code = LinkCode.EXPLICIT_BLOCK_ALREADY_TAKEN if explicit else LinkCode.SPATIAL_CONFLICT
    assert [result.code for _, result in outcomes if not result.linked] == [loser_code] * 5

    db = file_session_factory()
    try:
        block = db.get(SessionBlock, block_id)
        assert block.image_id == winners[0]
        assert block.attempts == 1
        assert block.status == "COMPLETED"
        assert db.query(Image).filter(Image.session_block_id == block_id).count() == 1
    finally:
        db.close()
