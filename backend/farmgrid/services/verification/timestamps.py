# backend/farmgrid/services/verification/timestamps.py
import re
from datetime import datetime, timezone
from typing import Any

from farmgrid.core.errors import TimestampParseError

# EXIF 形式: "2025:11:30 04:11:56"（日付部もコロン区切り）
EXIF_DATETIME_RE = re.compile(r"^(\d{4}):(\d{2}):(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(?:\.\d+)?$")


def normalize_timestamp(raw: Any) -> datetime:
    """
    Normalise an embedded-metadata or ISO-8601 timestamp to an aware UTC datetime.

    EXIF strings carry no offset and are read as UTC. Raises
    TimestampParseError for missing or unrecognised values.
    """
    if raw is None:
        raise TimestampParseError("Timestamp is missing")

    if isinstance(raw, datetime):
        dt = raw
    else:
        s = str(raw).strip()
        if not s:
            raise TimestampParseError("Timestamp is missing")
        m = EXIF_DATETIME_RE.match(s)
        if m:
            y, mo, d, hh, mm, ss = (int(g) for g in m.groups())
            try:
                return datetime(y, mo, d, hh, mm, ss, tzinfo=timezone.utc)
            except ValueError as e:
                raise TimestampParseError(f"Unparsable EXIF timestamp: {s}", details={"raw": s}) from e
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as e:
            raise TimestampParseError(f"Unrecognised timestamp format: {s}", details={"raw": s}) from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
