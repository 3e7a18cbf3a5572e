# backend/farmgrid/services/verification/gps.py
import math
import re
from typing import Any, Optional

_DMS_RE = re.compile(r"(\d+(?:\.\d+)?)[^\d.]+(\d+(?:\.\d+)?)[^\d.]+(\d+(?:\.\d+)?)")
_HEMISPHERE_RE = re.compile(r"\b([NSEW])\b")


def _rational(part: Any) -> float:
    # "12/1" | 12 | (12, 1) | IFDRational
    if isinstance(part, (tuple, list)) and len(part) == 2:
        num, den = float(part[0]), float(part[1])
        return num / den if den else num
    if isinstance(part, str):
        num_s, _, den_s = part.strip().partition("/")
        num = float(num_s)
        if den_s:
            den = float(den_s)
            return num / den if den else num
        return num
    return float(part)


def _sign(ref: Optional[str]) -> int:
    return -1 if ref and ref.strip().upper()[:1] in ("S", "W") else 1


def parse_exif_gps(value: Any, ref: Optional[str] = None) -> Optional[float]:
    """
    Parse one EXIF GPS coordinate into signed decimal degrees.

    Accepts a decimal number, a degree/minute/second triplet of rationals
    (``"12/1,34/1,56/1"`` or a sequence), or DMS text such as
    ``12° 34' 56" S``. ``ref`` (N/S/E/W) or a hemisphere letter in the text
    makes the result negative for S and W. Returns None when unparsable.
    """
    if value is None:
        return None

    if isinstance(value, (tuple, list)):
        if len(value) != 3:
            return None
        try:
            d, m, s = (_rational(p) for p in value)
        except (TypeError, ValueError, ZeroDivisionError):
            return None
        deg = d + m / 60 + s / 3600
        return _sign(ref) * deg if math.isfinite(deg) else None

    if isinstance(value, (int, float)):
        deg = float(value)
        if not math.isfinite(deg):
            return None
        return _sign(ref) * abs(deg) if ref else deg

    s = str(value).strip()
    if not s:
        return None

    hemi = _HEMISPHERE_RE.search(s)
    text_ref = hemi.group(1) if hemi else None
    sign = _sign(ref or text_ref)

    try:
        deg = float(s)
        if not math.isfinite(deg):
            return None
        return sign * abs(deg) if (ref or text_ref) else deg
    except ValueError:
        pass

    if "," in s:
        parts = [p.strip() for p in s.split(",")]
        if len(parts) == 3:
            try:
                d, m, sec = (_rational(p) for p in parts)
                return sign * (d + m / 60 + sec / 3600)
            except ValueError:
                pass

    m = _DMS_RE.search(s)
    if m:
        d, mi, sec = (float(g) for g in m.groups())
        return sign * (d + mi / 60 + sec / 3600)
    return None
