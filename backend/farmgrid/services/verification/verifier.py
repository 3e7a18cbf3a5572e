# backend/farmgrid/services/verification/verifier.py
"""
Capture Verifier.

Compares the device-reported capture position with the position embedded
in the photo. Agreement within the tolerance is VERIFIED, anything else is
FLAGGED. A mismatch is a recorded outcome, not an error. Missing or
unparsable embedded metadata is a hard rejection and raises.

When the farm boundary is known, the embedded point must also fall inside
it; a point outside forces FLAGGED whatever the distance was.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from shapely.geometry.base import BaseGeometry

from farmgrid.core.errors import MissingCaptureMetadataError
from farmgrid.core.logger import get_logger
from farmgrid.models.enums import VerificationStatus
from farmgrid.services.geometry.engine import GeometryEngine, LatLon, to_lat_lon
from farmgrid.services.verification.timestamps import normalize_timestamp

log = get_logger("verification")


class ReasonCode(str, Enum):
    EXIF_MATCHES_DEVICE = "EXIF matches device-capture"
    DISTANCE_EXCEEDS_TOLERANCE = "EXIF/device-capture distance exceeds tolerance"
    FARM_BOUNDARY_INVALID = "farm boundary invalid"
    OUTSIDE_FARM_BOUNDARY = "exif point outside farm boundary"
    INSIDE_FARM_BOUNDARY = "exif point inside farm boundary"


@dataclass(frozen=True)
class VerificationOutcome:
    status: VerificationStatus
    distance_m: float
    device_timestamp: datetime
    exif_timestamp: datetime
    reason_codes: tuple[ReasonCode, ...] = field(default_factory=tuple)

    @property
    def verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    @property
    def reason(self) -> str:
        return " | ".join(code.value for code in self.reason_codes)

    @property
    def label(self) -> str:
        # クライアント向け表記
        return "verified" if self.verified else "flagged"


class CaptureVerifier:
    def __init__(self, engine: GeometryEngine, tolerance_m: float = 50.0):
        self.engine = engine
        self.tolerance_m = tolerance_m

    def verify(
        self,
        device_position: Optional[LatLon],
        device_timestamp: Any,
        exif_position: Optional[LatLon],
        exif_timestamp: Any,
        tolerance_m: Optional[float] = None,
        farm_boundary: Optional[BaseGeometry] = None,
    ) -> VerificationOutcome:
        if exif_position is None or exif_position.lat is None or exif_position.lon is None:
            raise MissingCaptureMetadataError("EXIF GPS missing or unparsable, upload rejected")
        if exif_timestamp is None:
            raise MissingCaptureMetadataError("EXIF timestamp missing, upload rejected")
        if device_position is None or device_position.lat is None or device_position.lon is None:
            raise MissingCaptureMetadataError("Device-capture position missing, upload rejected")

        device_ts = normalize_timestamp(device_timestamp)
        exif_ts = normalize_timestamp(exif_timestamp)
        device = to_lat_lon(device_position.lat, device_position.lon)
        exif = to_lat_lon(exif_position.lat, exif_position.lon)

        tolerance = self.tolerance_m if tolerance_m is None else tolerance_m
        distance = self.engine.distance_m(device, exif)
        if distance <= tolerance:
            status = VerificationStatus.VERIFIED
            reasons = [ReasonCode.EXIF_MATCHES_DEVICE]
        else:
            status = VerificationStatus.FLAGGED
            reasons = [ReasonCode.DISTANCE_EXCEEDS_TOLERANCE]

        if farm_boundary is not None:
            ok, why = self.engine.validate(farm_boundary)
            if not ok:
                log.warning(f"Farm boundary is invalid: {why}")
                reasons.append(ReasonCode.FARM_BOUNDARY_INVALID)
            if self.engine.contains(farm_boundary, exif):
                reasons.append(ReasonCode.INSIDE_FARM_BOUNDARY)
            else:
                status = VerificationStatus.FLAGGED
                reasons.append(ReasonCode.OUTSIDE_FARM_BOUNDARY)

        log.info(
            f"Capture verification {status.value}",
            extra={"distance_m": round(distance, 2), "code": status.value},
        )
        return VerificationOutcome(
            status=status,
            distance_m=distance,
            device_timestamp=device_ts,
            exif_timestamp=exif_ts,
            reason_codes=tuple(reasons),
        )
