from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hive.errors import HiveStateError
from hive.models import Phase, Run
from hive.report import HiveReport
from hive.state import atomic_write_json, read_json


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _strings(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if str(item).strip())


@dataclass(frozen=True, slots=True)
class HandoffDocument:
    handoff_id: str
    from_phase: str
    from_agent: str
    to_phase: str
    status: str
    summary: str = ""
    decisions: tuple[tuple[str, str], ...] = ()
    files: tuple[str, ...] = ()
    tasks_created: tuple[str, ...] = ()
    tasks_closed: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "handoff_id": self.handoff_id,
            "from_phase": self.from_phase,
            "from_agent": self.from_agent,
            "to_phase": self.to_phase,
            "status": self.status,
            "summary": self.summary,
            "decisions": [
                {"decision": decision, "rationale": rationale}
                for decision, rationale in self.decisions
            ],
            "files": list(self.files),
            "tasks_created": list(self.tasks_created),
            "tasks_closed": list(self.tasks_closed),
            "notes": list(self.notes),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HandoffDocument:
        return cls(
            handoff_id=str(payload["handoff_id"]),
            from_phase=str(payload["from_phase"]),
            from_agent=str(payload.get("from_agent") or payload["from_phase"]),
            to_phase=str(payload.get("to_phase") or ""),
            status=str(payload.get("status") or "complete"),
            summary=str(payload.get("summary") or ""),
            decisions=tuple(
                (str(item.get("decision", "")), str(item.get("rationale", "")))
                for item in payload.get("decisions", [])
                if isinstance(item, dict)
            ),
            files=_strings(payload.get("files", [])),
            tasks_created=_strings(payload.get("tasks_created", [])),
            tasks_closed=_strings(payload.get("tasks_closed", [])),
            notes=_strings(payload.get("notes", [])),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
        )


def build_handoff(
    run: Run,
    phase: Phase,
    report: HiveReport,
    *,
    agent: str,
    to_phase: str,
    sequence: int | None = None,
) -> HandoffDocument:
    if sequence is None:
        sequence = 1 + sum(
            1
            for item in run.handoffs
            if item.get("from_phase") == phase.name and item.get("to_phase") == to_phase
        )
    notes = [*report.blockers]
    hint = report.payload.get("next_agent_hint")
    if isinstance(hint, str) and hint.strip():
        notes.append(f"next agent hint: {hint.strip()}")
    notes.extend(_strings(report.payload.get("notes", [])))
    return HandoffDocument(
        handoff_id=f"{phase.name}-to-{to_phase}-{sequence:03d}",
        from_phase=phase.name,
        from_agent=agent,
        to_phase=to_phase,
        status=report.status,
        summary=report.summary,
        decisions=tuple((item["decision"], item["rationale"]) for item in report.decisions),
        files=tuple(report.files_modified),
        tasks_created=_strings(report.payload.get("tasks_created", [])),
        tasks_closed=_strings(report.payload.get("tasks_closed", [])),
        notes=tuple(notes),
    )


def latest_handoff(run: Run, source: str | None = None) -> dict[str, Any] | None:
    for item in reversed(run.handoffs):
        if source is None or source in {item.get("from_agent"), item.get("from_phase")}:
            return item
    return None


class HandoffStore:
    def __init__(self, run_dir: Path) -> None:
        self.directory = run_dir / "handoffs"

    def path_for(self, handoff_id: str) -> Path:
        return self.directory / f"{handoff_id}.json"

    def write(self, document: HandoffDocument) -> Path:
        path = self.path_for(document.handoff_id)
        if path.exists():
            raise HiveStateError(f"Handoff already written: {document.handoff_id}")
        atomic_write_json(path, document.to_dict())
        return path

    def load(self, handoff_id: str) -> HandoffDocument:
        payload = read_json(self.path_for(handoff_id))
        if not isinstance(payload, dict):
            raise HiveStateError(f"Handoff not found: {handoff_id}")
        return HandoffDocument.from_dict(payload)

    def next_sequence(self, from_phase: str, to_phase: str) -> int:
        existing = list(self.directory.glob(f"{from_phase}-to-{to_phase}-*.json"))
        return len(existing) + 1
