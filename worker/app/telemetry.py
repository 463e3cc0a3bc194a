# worker/app/telemetry.py
"""
Sync telemetry: process-local counters for /status plus an append-only
JSON-lines event log (<SYNC_LOG_DIR>/sync.jsonl).

Counters reset when the process restarts; the event log is what survives.
Nothing here may raise into the sync pipeline.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from worker.app.config import settings

log = logging.getLogger(__name__)

COUNTERS = (
    "chunks_total",
    "chunks_failed",
    "entries_created",
    "entries_updated",
    "entries_deleted",
    "assets_materialized",
    "assets_failed",
    "dimensions_measured",
)
LOG_NAME = "sync.jsonl"
KEEP_ROTATED = 2  # sync.jsonl.1, sync.jsonl.2


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Telemetry:
    def __init__(self, log_dir: Optional[str] = None):
        self._lock = threading.Lock()
        self._started = time.time()
        self._counts: Dict[str, int] = dict.fromkeys(COUNTERS, 0)
        self._last_error: Optional[str] = None
        self._last_chunk: Optional[Dict[str, Any]] = None

        self.path = Path(log_dir or settings.SYNC_LOG_DIR) / LOG_NAME
        max_mb = int(os.getenv("MAX_LOG_MB", "16"))
        self._max_bytes = max_mb * 1024 * 1024
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning("cannot create telemetry dir %s: %s", self.path.parent, e)

    # --- counters ---------------------------------------------------------------

    def increment(self, name: str, by: int = 1) -> None:
        """Add to a known counter; unknown names and zero deltas are no-ops."""
        if name not in self._counts or not by:
            return
        with self._lock:
            self._counts[name] += int(by)

    def set_error(self, error: str) -> None:
        with self._lock:
            self._last_error = f"{_now_iso()} {error}"

    def record_chunk(self, summary: Dict[str, Any]) -> None:
        with self._lock:
            self._last_chunk = {"at": _now_iso(), **summary}

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "uptime_s": int(time.time() - self._started),
                **self._counts,
                "last_chunk": dict(self._last_chunk) if self._last_chunk else None,
                "last_error": self._last_error,
            }

    # --- event log --------------------------------------------------------------

    def log_json(self, event: str, level: str = "info", **fields: Any) -> None:
        """Append one event line: ts, level, subsystem, event, then `fields`."""
        line = json.dumps(
            {"ts": _now_iso(), "level": level, "subsystem": "sync", "event": event, **fields},
            ensure_ascii=False,
            default=str,
        )
        try:
            with self._lock:
                self._rotate_if_full()
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError as e:
            log.debug("telemetry write failed (%s): %s", event, e)

    def _rotate_if_full(self) -> None:
        # caller holds the lock
        if not self.path.exists() or self.path.stat().st_size <= self._max_bytes:
            return
        for n in range(KEEP_ROTATED, 0, -1):
            src = self.path if n == 1 else self.path.with_name(f"{LOG_NAME}.{n - 1}")
            dst = self.path.with_name(f"{LOG_NAME}.{n}")
            if src.exists():
                src.replace(dst)


telemetry = Telemetry()
