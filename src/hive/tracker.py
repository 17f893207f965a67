from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Task:
    id: str
    title: str
    blocked_by: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    priority: int = 2

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        blocked_by = payload.get("blocked_by") or payload.get("dependencies") or []
        edges = []
        for item in blocked_by:
            if isinstance(item, dict):
                item = item.get("id") or item.get("depends_on_id")
            if item:
                edges.append(str(item))
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            blocked_by=edges,
            labels=[str(item) for item in payload.get("labels") or []],
            priority=int(payload.get("priority", 2) or 2),
        )


class TaskTracker:
    """Read-only access to the external `bd` task tracker."""

    def __init__(self, binary: str, cwd: Path) -> None:
        self.binary = binary
        self.cwd = cwd

    @property
    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _query(self, args: list[str]) -> list[Task]:
        if not self.available:
            return []
        proc = subprocess.run(
            [self.binary, *args],
            cwd=self.cwd,
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            logger.warning("%s %s failed: %s", self.binary, " ".join(args), proc.stderr.strip())
            return []
        try:
            payload = json.loads(proc.stdout or "[]")
        except json.JSONDecodeError:
            logger.warning("%s %s returned non-JSON output", self.binary, " ".join(args))
            return []
        if isinstance(payload, dict):
            payload = payload.get("issues") or payload.get("tasks") or []
        return [
            Task.from_dict(item) for item in payload if isinstance(item, dict) and item.get("id")
        ]

    def ready(self) -> list[Task]:
        return self._query(["ready", "--json"])

    def open_tasks(self) -> list[Task]:
        return self._query(["list", "--status", "open", "--json"])
