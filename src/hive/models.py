from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

RunStatus = Literal["pending", "running", "paused", "complete", "failed"]
TERMINAL_STATUSES = frozenset({"complete", "failed"})
STEP_TYPES = frozenset({"build_verify", "fix_blocking", "parallel"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    agent: str | None = None
    step_type: str | None = None
    required: bool = True
    checkpoint_after: bool = False
    needs_handoff_from: str | None = None
    task: str = ""
    on_failure: str | None = None
    condition: str | None = None
    tasks: tuple[str, ...] = ()

    @property
    def actor(self) -> str:
        return self.agent or self.step_type or self.name

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "required": self.required,
            "checkpoint_after": self.checkpoint_after,
        }
        if self.agent:
            payload["agent"] = self.agent
        if self.step_type:
            payload["type"] = self.step_type
        if self.needs_handoff_from:
            payload["needs_handoff_from"] = self.needs_handoff_from
        if self.task:
            payload["task"] = self.task
        if self.on_failure:
            payload["on_failure"] = self.on_failure
        if self.condition:
            payload["condition"] = self.condition
        if self.tasks:
            payload["tasks"] = list(self.tasks)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Phase:
        name = str(payload.get("name") or "").strip()
        agent = payload.get("agent")
        step_type = payload.get("type") or payload.get("step_type")
        if not name:
            name = str(agent or step_type or "").strip()
        if not name:
            raise ValueError("Phase definition needs a name, agent or type.")
        if not agent and not step_type:
            raise ValueError(f"Phase '{name}' must bind an agent or a step type.")
        if step_type and step_type not in STEP_TYPES:
            raise ValueError(f"Phase '{name}' has unknown step type '{step_type}'.")
        return cls(
            name=name,
            agent=str(agent) if agent else None,
            step_type=str(step_type) if step_type else None,
            required=bool(payload.get("required", True)),
            checkpoint_after=bool(
                payload.get("checkpoint_after", payload.get("human_checkpoint_after", False))
            ),
            needs_handoff_from=payload.get("needs_handoff_from") or None,
            task=str(payload.get("task") or ""),
            on_failure=payload.get("on_failure") or None,
            condition=payload.get("condition") or None,
            tasks=tuple(str(item) for item in payload.get("tasks", []) or []),
        )


@dataclass(slots=True)
class Challenge:
    challenger: str
    challenged: str
    challenged_index: int
    issue: str
    evidence: str = ""
    suggestion: str = ""
    severity: str = "medium"
    can_proceed_with_default: bool = False
    raised_at: str = field(default_factory=_utcnow_iso)

    @property
    def edge(self) -> str:
        return f"{self.challenger}->{self.challenged}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenger": self.challenger,
            "challenged": self.challenged,
            "challenged_index": self.challenged_index,
            "issue": self.issue,
            "evidence": self.evidence,
            "suggestion": self.suggestion,
            "severity": self.severity,
            "can_proceed_with_default": self.can_proceed_with_default,
            "raised_at": self.raised_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Challenge:
        return cls(
            challenger=str(payload["challenger"]),
            challenged=str(payload["challenged"]),
            challenged_index=int(payload["challenged_index"]),
            issue=str(payload.get("issue") or ""),
            evidence=str(payload.get("evidence") or ""),
            suggestion=str(payload.get("suggestion") or ""),
            severity=str(payload.get("severity") or "medium"),
            can_proceed_with_default=bool(payload.get("can_proceed_with_default", False)),
            raised_at=str(payload.get("raised_at") or _utcnow_iso()),
        )


@dataclass(slots=True)
class AgentInvocation:
    phase: str
    agent: str
    attempt: int
    context: dict[str, Any]
    artifact: str | None = None
    exit_code: int | None = None
    outcome: str = "pending"
    report: dict[str, Any] | None = None
    confidence: dict[str, Any] | None = None
    duration_seconds: float = 0.0
    cost_usd: float = 0.0
    error: str | None = None
    started_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "agent": self.agent,
            "attempt": self.attempt,
            "context": self.context,
            "artifact": self.artifact,
            "exit_code": self.exit_code,
            "outcome": self.outcome,
            "report": self.report,
            "confidence": self.confidence,
            "duration_seconds": self.duration_seconds,
            "cost_usd": self.cost_usd,
            "error": self.error,
            "started_at": self.started_at,
        }


@dataclass(slots=True)
class Run:
    run_id: str
    objective: str
    workflow: str
    phases: list[Phase]
    status: RunStatus = "pending"
    phase_index: int = 0
    autonomous: bool = False
    context_files: list[str] = field(default_factory=list)
    scratchpad: dict[str, Any] = field(default_factory=dict)
    decisions: list[dict[str, Any]] = field(default_factory=list)
    invocations: list[dict[str, Any]] = field(default_factory=list)
    handoffs: list[dict[str, Any]] = field(default_factory=list)
    challenges: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    injected_phases: list[str] = field(default_factory=list)
    current_agent: str | None = None
    checkpoint_id: str | None = None
    failure: dict[str, Any] | None = None
    cost: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    revision: int = 0

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_phase(self) -> Phase | None:
        if 0 <= self.phase_index < len(self.phases):
            return self.phases[self.phase_index]
        return None

    def add_decision(
        self,
        *,
        actor: str,
        decision: str,
        rationale: str = "",
        phase: str | None = None,
        source: str = "report",
    ) -> dict[str, Any]:
        entry = {
            "id": f"dec-{len(self.decisions) + 1:03d}",
            "actor": actor,
            "phase": phase,
            "decision": decision,
            "rationale": rationale,
            "source": source,
            "recorded_at": _utcnow_iso(),
        }
        self.decisions.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "objective": self.objective,
            "workflow": self.workflow,
            "phases": [phase.to_dict() for phase in self.phases],
            "status": self.status,
            "phase_index": self.phase_index,
            "autonomous": self.autonomous,
            "context_files": list(self.context_files),
            "scratchpad": dict(self.scratchpad),
            "decisions": [dict(item) for item in self.decisions],
            "invocations": [dict(item) for item in self.invocations],
            "handoffs": [dict(item) for item in self.handoffs],
            "challenges": {edge: list(items) for edge, items in self.challenges.items()},
            "injected_phases": list(self.injected_phases),
            "current_agent": self.current_agent,
            "checkpoint_id": self.checkpoint_id,
            "failure": dict(self.failure) if self.failure else None,
            "cost": dict(self.cost),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Run:
        return cls(
            run_id=str(payload["run_id"]),
            objective=str(payload.get("objective") or ""),
            workflow=str(payload.get("workflow") or ""),
            phases=[Phase.from_dict(item) for item in payload.get("phases", [])],
            status=payload.get("status", "pending"),
            phase_index=int(payload.get("phase_index", 0)),
            autonomous=bool(payload.get("autonomous", False)),
            context_files=[str(item) for item in payload.get("context_files", [])],
            scratchpad=dict(payload.get("scratchpad") or {}),
            decisions=[dict(item) for item in payload.get("decisions", [])],
            invocations=[dict(item) for item in payload.get("invocations", [])],
            handoffs=[dict(item) for item in payload.get("handoffs", [])],
            challenges={
                str(edge): list(items) for edge, items in (payload.get("challenges") or {}).items()
            },
            injected_phases=[str(item) for item in payload.get("injected_phases", [])],
            current_agent=payload.get("current_agent"),
            checkpoint_id=payload.get("checkpoint_id"),
            failure=dict(payload["failure"]) if payload.get("failure") else None,
            cost=dict(payload.get("cost") or {}),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
            revision=int(payload.get("revision", 0)),
        )
