# backend/farmgrid/services/exif/reader.py
from typing import Any, Optional

import exifread
from PIL import Image

from farmgrid.services.verification.gps import parse_exif_gps

# DateTimeOriginal を優先、無ければ DateTime
EXIF_DT_KEYS = ["EXIF DateTimeOriginal", "Image DateTime"]
GPS_IFD = 0x8825


def _gps_from_pillow(path: str) -> tuple[Optional[float], Optional[float]]:
    with Image.open(path) as img:
        gps_info = img.getexif().get_ifd(GPS_IFD)
    if not gps_info:
        return None, None
    # 1: LatitudeRef, 2: Latitude, 3: LongitudeRef, 4: Longitude
    lat = parse_exif_gps(gps_info.get(2), gps_info.get(1))
    lon = parse_exif_gps(gps_info.get(4), gps_info.get(3))
    return lat, lon


def parse_exif(path: str) -> dict[str, Any]:
    """
    Extract capture metadata from an image file.

    Returns ``{"lat", "lon", "timestamp", "raw"}``. The timestamp is the raw
    EXIF string ("YYYY:MM:DD HH:MM:SS"); normalisation happens in the
    verifier so an unparsable value is rejected there.
    """
    with open(path, "rb") as f:
        tags = exifread.process_file(f, details=False)

    lat, lon = _gps_from_pillow(path)
    if lat is None or lon is None:
        # Pillow が GPS IFD を読めない形式は ExifRead の値で補う
        lat = parse_exif_gps(_tag_values(tags.get("GPS GPSLatitude")), _tag_str(tags.get("GPS GPSLatitudeRef")))
        lon = parse_exif_gps(_tag_values(tags.get("GPS GPSLongitude")), _tag_str(tags.get("GPS GPSLongitudeRef")))

    taken_at = None
    for k in EXIF_DT_KEYS:
        if k in tags:
            taken_at = str(tags[k]).strip()
            break

    return {
        "lat": lat,
        "lon": lon,
        "timestamp": taken_at,
        "raw": {k: str(v) for k, v in tags.items() if k in EXIF_DT_KEYS or k.startswith("GPS ")},
    }


def _tag_values(tag) -> Optional[list]:
    if tag is None:
        return None
    return [(r.num, r.den) for r in tag.values]


def _tag_str(tag) -> Optional[str]:
    return str(tag).strip() if tag is not None else None
