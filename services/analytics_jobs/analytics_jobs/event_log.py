from __future__ import annotations

import csv
import json
import os
import threading
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class EventLogger:
    """
    Appends job lifecycle events (completed, failed, retried, inline) to a file.

    Supported formats:
    - EVENT_LOG_FORMAT=csv  -> CSV with header
    - EVENT_LOG_FORMAT=json -> JSON Lines (one JSON object per line)
    """

    CSV_FIELDS: List[str] = [
        "ts",
        "event",
        "job_id",
        "mode",
        "status",
        "attempts",
        "runtime_s",
        "snapshot_id",
        "error",
    ]

    def __init__(
        self,
        path: Optional[str] = None,
        fmt: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        if enabled is None:
            enabled = os.environ.get("EVENT_LOG_ENABLED", "1") not in ("0", "false", "False")
        self.enabled = enabled
        self.format = (fmt or os.environ.get("EVENT_LOG_FORMAT", "json")).lower()  # json | csv
        self.path = path or os.environ.get("EVENT_LOG_PATH", "logs/job_events.jsonl")
        self._lock = threading.Lock()

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        rec: Dict[str, Any] = {"ts": time.time(), "event": event, **payload}

        for k, v in list(rec.items()):
            if is_dataclass(v):
                rec[k] = asdict(v)
            elif isinstance(v, Enum):
                rec[k] = v.value

        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with self._lock:
                if self.format == "csv":
                    self._emit_csv(rec)
                else:
                    self._emit_jsonl(rec)
        except OSError:
            # Never crash a job because of the event file
            return

    def _emit_jsonl(self, rec: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")

    def _emit_csv(self, rec: Dict[str, Any]) -> None:
        row = {k: rec.get(k, "") for k in self.CSV_FIELDS}
        write_header = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=self.CSV_FIELDS)
            if write_header:
                w.writeheader()
            w.writerow(row)


_EVENT_LOGGER: Optional[EventLogger] = None


def get_event_logger() -> EventLogger:
    global _EVENT_LOGGER
    if _EVENT_LOGGER is None:
        _EVENT_LOGGER = EventLogger()
    return _EVENT_LOGGER
