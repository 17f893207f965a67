from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hive.state import file_lock

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def read_events(path: Path) -> list[dict[str, Any]]:
    """Read a JSONL event file, ignoring a torn trailing line."""
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("skipping malformed event line in %s", path)
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events


class EventLog:
    """Append-only per-run event log.

    Sequence numbers are assigned under both a thread lock and a lock file, so
    concurrent writers in the same process (parallel tasks) or a second process
    (`hive comb`) each receive a distinct, gap-free `seq`.
    """

    def __init__(self, path: Path, run_id: str, hook: EventHook | None = None) -> None:
        self.path = path
        self.run_id = run_id
        self.hook = hook
        self.lock_file = path.with_name(path.name + ".lock")
        self._lock = threading.Lock()
        self._last_seq: int | None = None
        self._known_size = -1

    def _sync_last_seq(self) -> int:
        size = self.path.stat().st_size if self.path.exists() else 0
        if self._last_seq is not None and size == self._known_size:
            return self._last_seq
        events = read_events(self.path)
        self._last_seq = max((int(event.get("seq", 0)) for event in events), default=0)
        self._known_size = size
        return self._last_seq

    @property
    def offset(self) -> int:
        with self._lock:
            return self._sync_last_seq()

    def emit(self, kind: str, *, actor: str = "engine", **detail: Any) -> dict[str, Any]:
        with self._lock, file_lock(self.lock_file):
            seq = self._sync_last_seq() + 1
            event = {
                "seq": seq,
                "timestamp": _utcnow_iso(),
                "kind": kind,
                "actor": actor,
                "run_id": self.run_id,
                "detail": detail,
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            self._last_seq = seq
            self._known_size = self.path.stat().st_size
        logger.debug("event %s #%d actor=%s", kind, seq, actor)
        if self.hook is not None:
            self.hook(event)
        return event

    def read(self) -> list[dict[str, Any]]:
        return read_events(self.path)
