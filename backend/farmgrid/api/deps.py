# backend/farmgrid/api/deps.py
"""FastAPI providers. Tests swap any of these via ``app.dependency_overrides``."""
import random

from fastapi import Depends

from farmgrid.config import settings
from farmgrid.services.farms.boundary import BoundaryService
from farmgrid.services.geometry.engine import GeometryEngine, ShapelyGeometryEngine
from farmgrid.services.grid.builder import GridBuilder
from farmgrid.services.linking.linker import BlockLinker
from farmgrid.services.sampling.allocator import SessionAllocator
from farmgrid.services.sessions.lifecycle import DatabaseReportSink, ReportSink, SessionLifecycle
from farmgrid.services.storage.metadata import LocalStorageMetadataSource, ObjectMetadataSource
from farmgrid.services.uploads.completion import UploadService
from farmgrid.services.verification.verifier import CaptureVerifier

_geometry_engine = ShapelyGeometryEngine(min_cell_area_m2=settings.GRID_MIN_CELL_AREA_M2)


def get_geometry_engine() -> GeometryEngine:
    return _geometry_engine


def get_rng() -> random.Random:
    return random.SystemRandom()


def get_metadata_source() -> ObjectMetadataSource:
    return LocalStorageMetadataSource(settings.STORAGE_DIR)


def get_report_sink() -> ReportSink:
    return DatabaseReportSink()


def get_grid_builder(engine: GeometryEngine = Depends(get_geometry_engine)) -> GridBuilder:
    return GridBuilder(engine)


def get_allocator(
    grid_builder: GridBuilder = Depends(get_grid_builder),
    rng: random.Random = Depends(get_rng),
) -> SessionAllocator:
    return SessionAllocator(
        grid_builder,
        sample_size=settings.SESSION_SAMPLE_SIZE,
        default_resolution_m=settings.DEFAULT_GRID_RESOLUTION_M,
        min_resolution_m=settings.MIN_GRID_RESOLUTION_M,
        max_resolution_m=settings.MAX_GRID_RESOLUTION_M,
        rng=rng,
    )


def get_verifier(engine: GeometryEngine = Depends(get_geometry_engine)) -> CaptureVerifier:
    return CaptureVerifier(engine, tolerance_m=settings.VERIFICATION_TOLERANCE_METERS)


def get_linker(engine: GeometryEngine = Depends(get_geometry_engine)) -> BlockLinker:
    return BlockLinker(
        engine,
        max_attempts=settings.MAX_BLOCK_ATTEMPTS,
        fallback_on_explicit_conflict=settings.LINK_FALLBACK_ON_EXPLICIT_CONFLICT,
    )


def get_upload_service(
    engine: GeometryEngine = Depends(get_geometry_engine),
    verifier: CaptureVerifier = Depends(get_verifier),
    linker: BlockLinker = Depends(get_linker),
    metadata_source: ObjectMetadataSource = Depends(get_metadata_source),
) -> UploadService:
    return UploadService(engine, verifier, linker, metadata_source)


def get_lifecycle(report_sink: ReportSink = Depends(get_report_sink)) -> SessionLifecycle:
    return SessionLifecycle(report_sink)


def get_boundary_service(
    engine: GeometryEngine = Depends(get_geometry_engine),
    grid_builder: GridBuilder = Depends(get_grid_builder),
) -> BoundaryService:
    return BoundaryService(engine, grid_builder)
