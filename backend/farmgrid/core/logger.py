# backend/farmgrid/core/logger.py
import json
import logging
from datetime import datetime, timezone

from farmgrid.config import settings

SERVICE_NAME = "farmgrid"

# extra= で渡される任意フィールド
_EXTRA_KEYS = (
    "request_id", "method", "path", "status_code", "duration_ms",
    "user_id", "farm_id", "session_id", "block_id", "image_id",
    "local_upload_id", "code", "count", "resolution_m", "distance_m",
)


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                log[key] = getattr(record, key)
        if record.exc_info:
            log["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


logger = logging.getLogger(SERVICE_NAME)
logger.setLevel(settings.LOG_LEVEL.upper())

if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(JSONFormatter())
    logger.addHandler(console_handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger under the service logger, e.g. ``farmgrid.grid``."""
    return logger.getChild(name)
