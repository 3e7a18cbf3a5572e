# backend/farmgrid/services/storage/metadata.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Protocol

from PIL import UnidentifiedImageError

from farmgrid.core.errors import MissingCaptureMetadataError, NotFoundError, StorageUnavailableError
from farmgrid.core.logger import get_logger
from farmgrid.services.exif.reader import parse_exif

log = get_logger("storage")


class ObjectMetadataSource(Protocol):
    """Object-storage collaborator: returns embedded metadata for a stored object."""

    def fetch_metadata(self, object_ref: str) -> dict[str, Any]:
        """``{"lat", "lon", "timestamp", "raw"}``; lat/lon/timestamp may be None."""
        ...


def default_storage_dir() -> Path:
    container = Path("/app/data/uploads")
    if container.parent.exists():
        return container
    # backend/farmgrid/services/storage/metadata.py → parents[4] = <repo root>
    return Path(__file__).resolve().parents[4] / "data" / "uploads"


class LocalStorageMetadataSource:
    """Reads EXIF from files stored under ``root/<object_ref>``."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root) if root else default_storage_dir()

    def resolve(self, object_ref: str) -> Path:
        path = (self.root / object_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise NotFoundError("Stored object not found", details={"storageObjectRef": object_ref})
        return path

    def fetch_metadata(self, object_ref: str) -> dict[str, Any]:
        path = self.resolve(object_ref)
        if not path.is_file():
            raise NotFoundError("Stored object not found", details={"storageObjectRef": object_ref})
        try:
            return parse_exif(str(path))
        except UnidentifiedImageError as e:
            raise MissingCaptureMetadataError("EXIF missing from image, upload rejected") from e
        except OSError as e:
            log.error(f"Object storage read failed: {e}")
            raise StorageUnavailableError("Object storage unavailable", details={"storageObjectRef": object_ref}) from e
