"""Generation profiling tracer: appends structured JSONL events to a trace file.

Delivery guarantee: at-most-once for in-flight events. A reader opening
the same file may see a partial trailing line if a write is in progress.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from typing import Any

from localdiffuse import log

# Per-file locks to prevent interleaving from concurrent requests on the same file
_file_locks: dict[str, threading.Lock] = {}
_file_locks_guard = threading.Lock()


def _get_file_lock(path: str) -> threading.Lock:
    with _file_locks_guard:
        if path not in _file_locks:
            _file_locks[path] = threading.Lock()
        return _file_locks[path]


class GenerationTracer:
    """Writes one JSON object per line to *path* (appending)."""

    def __init__(self, path: str, backend: str = "cpu"):
        self.backend = backend

        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)
        self._path = path
        self._lock = _get_file_lock(os.path.abspath(path))
        self._file = open(path, "a", encoding="utf-8")

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        """Flush and close the underlying file handle."""
        try:
            with self._lock:
                if self._file.closed:
                    return
                self._file.flush()
                self._file.close()
        except OSError as ex:
            log.warning(f"  Tracer: close failed for {self._path}: {ex}")

    def record(self, event_type: str, job_id: str, duration_s: float, **extra: Any) -> None:
        """Append a JSONL line with common fields + extras."""
        event: dict[str, Any] = {
            "type": event_type,
            "ts": datetime.now(timezone.utc).isoformat(),
            "job_id": job_id,
            "backend": self.backend,
            "duration_s": round(duration_s, 6),
        }
        event.update(extra)

        line = json.dumps(event, separators=(",", ":")) + "\n"
        with self._lock:
            self._file.write(line)
            self._file.flush()

    # ── Convenience methods ──────────────────────────────────────────

    def denoise_step(self, job_id: str, step: int, total_steps: int,
                     timestep: float, duration_s: float) -> None:
        self.record("denoise_step", job_id, duration_s,
                    step=step, total_steps=total_steps, timestep=timestep)

    def vae_tile(self, job_id: str, tile: int, total_tiles: int, tile_w: int,
                 tile_h: int, op: str, duration_s: float) -> None:
        self.record("vae_tile", job_id, duration_s,
                    tile=tile, total_tiles=total_tiles,
                    tile_w=tile_w, tile_h=tile_h, op=op)

    def upscale_tile(self, job_id: str, tile: int, total_tiles: int,
                     duration_s: float) -> None:
        self.record("upscale_tile", job_id, duration_s,
                    tile=tile, total_tiles=total_tiles)

    def stage_complete(self, job_id: str, stage: str, width: int, height: int,
                       steps: int | None, total_duration_s: float) -> None:
        self.record("stage_complete", job_id, total_duration_s,
                    stage=stage, width=width, height=height, steps=steps)


# ── Thread-local current tracer ──────────────────────────────────────

_thread_local = threading.local()


def set_current_tracer(tracer: GenerationTracer | None) -> None:
    """Set the tracer for the current thread (called by the host before a request)."""
    _thread_local.tracer = tracer


def get_current_tracer() -> GenerationTracer | None:
    """Get the tracer for the current thread (called by handlers)."""
    return getattr(_thread_local, "tracer", None)
