from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from hive.errors import HiveStateError
from hive.models import Run
from hive.state import atomic_write_json, read_json

logger = logging.getLogger(__name__)

CheckpointKind = Literal[
    "phase_review",
    "challenge",
    "needs_input",
    "low_confidence",
    "build_failure",
    "merge_conflict",
]
DECISIONS = ("continue", "adjust", "reject")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_checkpoint_id() -> str:
    return f"cp-{_utcnow().strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6]}"


class CheckpointManager:
    """Checkpoint files under `.hive/checkpoints/<id>.json`.

    A checkpoint holds the full run document, so restoring one never depends
    on anything written after it.
    """

    VERSION = 1

    def __init__(self, hive_dir: Path) -> None:
        self.directory = hive_dir / "checkpoints"
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, checkpoint_id: str) -> Path:
        return self.directory / f"{checkpoint_id}.json"

    def create(
        self,
        run: Run,
        kind: CheckpointKind,
        reason: str,
        *,
        details: dict[str, Any] | None = None,
        event_offset: int = 0,
        checkpoint_id: str | None = None,
    ) -> dict[str, Any]:
        checkpoint_id = checkpoint_id or new_checkpoint_id()
        phase = run.current_phase
        payload = {
            "version": self.VERSION,
            "checkpoint_id": checkpoint_id,
            "run_id": run.run_id,
            "kind": kind,
            "phase_index": run.phase_index,
            "phase": phase.name if phase else None,
            "reason": reason,
            "details": details or {},
            "created_at": _utcnow().replace(microsecond=0).isoformat(),
            "event_offset": event_offset,
            "token": uuid4().hex,
            "snapshot": run.to_dict(),
            "resolution": None,
        }
        atomic_write_json(self._path(checkpoint_id), payload)
        logger.info("checkpoint %s (%s) for run %s", checkpoint_id, kind, run.run_id)
        return payload

    def load(self, checkpoint_id: str) -> dict[str, Any]:
        payload = read_json(self._path(checkpoint_id))
        if not isinstance(payload, dict):
            raise HiveStateError(f"Checkpoint not found: {checkpoint_id}")
        return payload

    def list(self, run_id: str | None = None) -> list[dict[str, Any]]:
        items = []
        for path in sorted(self.directory.glob("cp-*.json")):
            payload = read_json(path)
            if not isinstance(payload, dict):
                continue
            if run_id and payload.get("run_id") != run_id:
                continue
            items.append(payload)
        items.sort(key=lambda item: (str(item.get("created_at")), str(item["checkpoint_id"])))
        return items

    def latest_open(self, run_id: str | None = None) -> dict[str, Any] | None:
        open_items = [item for item in self.list(run_id) if not item.get("resolution")]
        return open_items[-1] if open_items else None

    @staticmethod
    def restore(checkpoint: dict[str, Any]) -> Run:
        return Run.from_dict(checkpoint["snapshot"])

    def resolve(self, checkpoint_id: str, decision: str, note: str | None = None) -> dict[str, Any]:
        if decision not in DECISIONS:
            raise HiveStateError(
                f"Unknown checkpoint decision '{decision}'. "
                f"Expected one of: {', '.join(DECISIONS)}."
            )
        payload = self.load(checkpoint_id)
        if payload.get("resolution"):
            raise HiveStateError(f"Checkpoint already resolved: {checkpoint_id}")
        payload["resolution"] = {
            "decision": decision,
            "note": note,
            "resolved_at": _utcnow().replace(microsecond=0).isoformat(),
        }
        atomic_write_json(self._path(checkpoint_id), payload)
        return payload
