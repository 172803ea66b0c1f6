"""Structured logging utilities for test runs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)


@dataclass(slots=True)
class LogPaths:
    base: Path
    events: Path


class StructuredLogger:
    """Writes JSONL events for each test attempt and fixture lifecycle step."""

    def __init__(self, run_id: str, paths: LogPaths) -> None:
        self.run_id = run_id
        self.paths = paths
        self._seq = 0
        self._events_file = paths.events.open("a", encoding="utf-8")

    def _write(self, kind: str, payload: Dict[str, Any]) -> int:
        self._seq += 1
        record = {"ts": time.time(), "run_id": self.run_id, "seq": self._seq, "kind": kind}
        record.update(payload)
        self._events_file.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        self._events_file.flush()
        return self._seq

    def log_attempt(
        self,
        *,
        test: str,
        worker: str,
        attempt: int,
        ok: bool,
        duration_ms: float,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        return self._write(
            "attempt",
            {
                "test": test,
                "worker": worker,
                "attempt": attempt,
                "ok": ok,
                "duration_ms": round(duration_ms, 3),
                "error": error,
                "metadata": metadata or {},
            },
        )

    def log_fixture(self, event: str, name: str, scope: Any, label: str) -> int:
        """Recorder callback for :class:`harness.fixtures.FixtureResolver`."""

        return self._write(
            "fixture",
            {"event": event, "fixture": name, "scope": getattr(scope, "value", scope), "label": label},
        )

    def log_summary(self, summary: Dict[str, Any]) -> int:
        return self._write("summary", {"summary": summary})

    def close(self) -> None:
        try:
            self._events_file.close()
        except OSError as exc:
            log.warning("Could not close %s: %s", self.paths.events, exc)


def prepare_log_paths(run_id: str, base_dir: Path) -> LogPaths:
    base_dir.mkdir(parents=True, exist_ok=True)
    events_file = base_dir / "events.jsonl"
    return LogPaths(base=base_dir, events=events_file)
