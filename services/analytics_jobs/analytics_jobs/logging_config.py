import logging
import json
import os
import sys
import time
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_LEVEL = logging.INFO

EXTRA_FIELDS = (
    "event",
    "job_id",
    "mode",
    "state",
    "previous_state",
    "status",
    "attempts",
    "runtime_s",
    "delay_s",
    "snapshot_id",
    "signal",
    "exit_code",
    "error",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # Common extras (if provided via logger.*(..., extra={...}))
        for k in EXTRA_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(fmt: Optional[str] = None):
    fmt = (fmt or os.environ.get("LOG_FORMAT", "plain")).lower()  # plain | json
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.setLevel(os.environ.get("LOG_LEVEL", "").upper() or LOG_LEVEL)
    root.handlers.clear()
    root.addHandler(handler)
