"""Structured KPI events for tag SLAM runs.

Every event is one JSON object per line with an ``event`` name, a wall-clock
``ts`` and event specific fields; ``None`` fields are dropped.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections import Counter
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger("tagslam.kpi")


class KPILogger:
    """Emit frame, optimisation and marginal events to a JSON-lines file."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self.counts: Counter = Counter()
        self._extra = dict(extra_fields or {})
        self._emit_to_logger = emit_to_logger
        self._fh = None
        if log_path and enabled:
            parent = os.path.dirname(os.path.abspath(log_path))
            os.makedirs(parent, exist_ok=True)
            self._fh = open(log_path, "w", encoding="utf-8")

    def __enter__(self) -> "KPILogger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload: Dict[str, Any] = {"event": event, "ts": time.time(), **self._extra}
        payload.update((k, v) for k, v in fields.items() if v is not None)
        line = json.dumps(payload, sort_keys=True)
        self.counts[event] += 1
        if self._emit_to_logger:
            logger.debug("KPI %s", line)
        if self._fh is not None:
            self._fh.write(line + "\n")
            self._fh.flush()

    def frame_ingest(self, frame: int, stamp: float, **fields: Any) -> None:
        self._emit("frame_ingest", frame=frame, stamp=stamp, **fields)

    def optimization_start(self, batch_id: int, factor_count: int, value_count: int) -> None:
        self._emit("optimization_start", batch_id=batch_id,
                   factor_count=factor_count, value_count=value_count)

    def optimization_end(self, batch_id: int, duration_s: float,
                         updated_keys: Optional[int] = None, *,
                         error: Optional[float] = None,
                         iterations: Optional[int] = None) -> None:
        self._emit("optimization_end", batch_id=batch_id, duration_s=duration_s,
                   updated_keys=updated_keys, error=error, iterations=iterations)

    def marginals(self, revision: int, duration_s: float, **fields: Any) -> None:
        self._emit("marginals", revision=revision, duration_s=duration_s, **fields)

    def pose_broadcast(self, frame: int, pose_count: Optional[int] = None, **fields: Any) -> None:
        self._emit("pose_broadcast", frame=frame, pose_count=pose_count, **fields)

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            finally:
                self._fh = None


def iter_events(path: str) -> Iterator[Dict[str, Any]]:
    """Read back a KPI file written by KPILogger."""
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line:
                yield json.loads(line)


def events_named(path: str, name: str) -> List[Dict[str, Any]]:
    return [e for e in iter_events(path) if e.get("event") == name]
