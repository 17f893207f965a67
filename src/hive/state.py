from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hive.errors import HiveStateError
from hive.models import Run

logger = logging.getLogger(__name__)

HIVE_DIR_NAME = ".hive"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON via a sibling temp file and `os.replace`, so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise HiveStateError(f"Corrupt state file {path}: {exc}") from exc


@contextmanager
def file_lock(lock_file: Path, timeout_seconds: float = 5.0):
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            if time.monotonic() - start > timeout_seconds:
                raise HiveStateError(f"Timed out waiting for lock {lock_file}.") from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass


class RunStateStore:
    """Versioned run documents under `.hive/runs/<run_id>/run.json`.

    Each document is wrapped in `{schema_version, revision, updated_at, data}`;
    a save with a stale revision is rejected instead of overwriting newer state.
    `.hive/state.json` mirrors the current run for dashboards.
    """

    SCHEMA_VERSION = 1

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.hive_dir = self.repo_root / HIVE_DIR_NAME
        self.runs_dir = self.hive_dir / "runs"
        self.state_file = self.hive_dir / "state.json"
        self.lock_file = self.hive_dir / ".state.lock"
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def _run_file(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "run.json"

    def _read_envelope(self, run_id: str) -> dict[str, Any] | None:
        payload = read_json(self._run_file(run_id))
        if payload is None:
            return None
        if not isinstance(payload, dict) or "data" not in payload:
            raise HiveStateError(f"Run document for {run_id} has no envelope.")
        return payload

    def revision(self, run_id: str) -> int:
        envelope = self._read_envelope(run_id)
        if envelope is None:
            return 0
        return int(envelope.get("revision", 0))

    def save(self, run: Run) -> None:
        with file_lock(self.lock_file):
            current_revision = self.revision(run.run_id)
            if current_revision != run.revision:
                raise HiveStateError(
                    f"Concurrent state update detected for run '{run.run_id}' "
                    f"(expected revision {run.revision}, found {current_revision})."
                )
            run.revision = current_revision + 1
            run.updated_at = _utcnow_iso()
            atomic_write_json(
                self._run_file(run.run_id),
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": run.revision,
                    "updated_at": run.updated_at,
                    "data": run.to_dict(),
                },
            )
            atomic_write_json(self.state_file, self._dashboard_view(run))
        logger.debug("saved run %s revision %d", run.run_id, run.revision)

    @staticmethod
    def _dashboard_view(run: Run) -> dict[str, Any]:
        phase = run.current_phase
        return {
            "run_id": run.run_id,
            "objective": run.objective,
            "workflow": run.workflow,
            "status": run.status,
            "current_phase": phase.name if phase else None,
            "current_agent": run.current_agent,
            "phase_index": run.phase_index,
            "phases": [item.name for item in run.phases],
            "decisions": [item.get("decision", "") for item in run.decisions],
            "checkpoint_id": run.checkpoint_id,
            "failure": run.failure,
            "cost": run.cost,
            "updated_at": run.updated_at,
        }

    def load(self, run_id: str) -> Run:
        envelope = self._read_envelope(run_id)
        if envelope is None:
            raise HiveStateError(f"Run not found: {run_id}")
        run = Run.from_dict(envelope["data"])
        run.revision = int(envelope.get("revision", run.revision))
        return run

    def dashboard(self) -> dict[str, Any]:
        payload = read_json(self.state_file)
        return payload if isinstance(payload, dict) else {}

    def current_run_id(self) -> str | None:
        run_id = self.dashboard().get("run_id")
        return str(run_id) if run_id else None

    def load_current(self) -> Run:
        run_id = self.current_run_id()
        if not run_id:
            raise HiveStateError("No run has been started in this repository.")
        return self.load(run_id)
