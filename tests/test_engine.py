import asyncio
import json
import re
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from hive.backends.base import AgentBackend, BackendExecutionError
from hive.config import HiveConfig
from hive.engine import EXIT_FAILURE, EXIT_PAUSED, EXIT_SUCCESS, WorkflowEngine
from hive.errors import HiveStateError, WorkflowError

PHASE_PATTERN = re.compile(r"^# Phase: (\S+) \((\S+)\)$", re.MULTILINE)


def _report(status: str, confidence: float = 0.9, **payload: Any) -> str:
    body = json.dumps(
        {"status": status, "confidence": confidence, "summary": f"{status} work", **payload}
    )
    return f"Working on it.\n<!--HIVE_REPORT\n{body}\nHIVE_REPORT-->\n"


class ScriptedBackend(AgentBackend):
    """Replies per agent role, read from the `# Phase: <name> (<agent>)` prompt header."""

    def __init__(
        self,
        script: dict[str, list[Any]] | None = None,
        effects: dict[str, Callable[[], None]] | None = None,
    ) -> None:
        self.script = {role: list(items) for role, items in (script or {}).items()}
        self.effects = effects or {}
        self.calls: list[str] = []
        self.prompts: dict[str, list[str]] = {}

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        match = PHASE_PATTERN.search(user_prompt)
        role = match.group(2) if match else "unknown"
        self.calls.append(role)
        self.prompts.setdefault(role, []).append(user_prompt)
        items = self.script.get(role) or [_report("complete")]
        item = items.pop(0) if len(items) > 1 else items[0]
        if role in self.effects:
            self.effects[role]()
        if isinstance(item, Exception):
            raise item
        yield item


def _write_workflow(repo: Path, name: str, phases: list[dict[str, Any]]) -> None:
    directory = repo / ".hive" / "workflows"
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{name}.json").write_text(
        json.dumps({"description": f"{name} test workflow", "phases": phases}),
        encoding="utf-8",
    )


def _design_then_implement(repo: Path, name: str = "pair", **design: Any) -> None:
    _write_workflow(
        repo,
        name,
        [
            {"name": "design", "agent": "architect", **design},
            {"name": "implementation", "agent": "implementer", "needs_handoff_from": "architect"},
        ],
    )


def _events(engine: WorkflowEngine, run_id: str) -> list[dict[str, Any]]:
    return engine.events_for(run_id).read()


def _kinds(engine: WorkflowEngine, run_id: str) -> list[str]:
    return [event["kind"] for event in _events(engine, run_id)]


def test_quick_workflow_runs_to_completion(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {"implementer": [_report("complete", files_modified=["src/health.py"])]}
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Add a health endpoint", "quick"))

    assert result.status == "complete"
    assert result.exit_code == EXIT_SUCCESS
    kinds = _kinds(engine, result.run_id)
    assert kinds[0] == "run_started"
    assert kinds[-1] == "run_complete"
    assert kinds.count("phase_complete") == 2
    assert kinds.count("run_complete") == 1
    build = next(e for e in _events(engine, result.run_id) if e["kind"] == "build_verify")
    assert build["detail"]["result"] == "skipped"
    assert backend.calls == ["implementer"]

    run_dir = engine.store.run_dir(result.run_id)
    assert (run_dir / "handoffs" / "implementation-to-build_check-001.json").is_file()
    assert (run_dir / "output" / "implementation-attempt-1.md").is_file()
    assert json.loads((run_dir / "cost.json").read_text(encoding="utf-8"))["total_calls"] == 1

    stored = engine.store.load(result.run_id)
    assert stored.status == "complete"
    assert stored.invocations[0]["outcome"] == "complete"
    assert stored.invocations[0]["confidence"]["category"] == "clear-pass"


def test_event_sequence_is_gap_free(tmp_path: Path) -> None:
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), ScriptedBackend())

    result = asyncio.run(engine.start("Add a health endpoint", "quick"))

    sequences = [event["seq"] for event in _events(engine, result.run_id)]
    assert sequences == list(range(1, len(sequences) + 1))


def test_blocked_required_phase_fails_run(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, "plan")
    backend = ScriptedBackend(
        {"architect": [_report("blocked", 0.2, blockers=["no API contract available"])]}
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Integrate payments", "plan"))

    assert result.status == "failed"
    assert result.exit_code == EXIT_FAILURE
    assert backend.calls == ["architect"]
    events = _events(engine, result.run_id)
    failed = [event for event in events if event["kind"] == "phase_failed"]
    assert len(failed) == 1
    assert failed[0]["actor"] == "architect"
    assert failed[0]["detail"]["agent"] == "architect"
    assert failed[0]["detail"]["diagnostics"] == ["no API contract available"]
    assert not any(
        event["kind"] in {"phase_start", "agent_start"} and event["actor"] == "implementer"
        for event in events
    )
    assert result.state.failure["reason"] == "blocked"
    assert "run_complete" not in [event["kind"] for event in events]


def test_blocked_optional_phase_is_skipped(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, "soft", required=False)
    backend = ScriptedBackend({"architect": [_report("blocked", 0.1)]})
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Integrate payments", "soft"))

    assert result.status == "complete"
    assert backend.calls == ["architect", "implementer"]
    assert "phase_skipped" in _kinds(engine, result.run_id)


def test_malformed_report_is_treated_as_blocked(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, "plan")
    backend = ScriptedBackend({"architect": ["I designed it, trust me."]})
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Integrate payments", "plan"))

    assert result.status == "failed"
    kinds = _kinds(engine, result.run_id)
    assert "report_invalid" in kinds
    assert result.state.failure["diagnostics"] == ["no HIVE_REPORT block found"]
    assert backend.calls == ["architect"]


def test_challenge_replays_target_once_then_reinvokes_challenger(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend(
        {
            "architect": [_report("complete"), _report("complete", summary="added tenant_id")],
            "implementer": [
                _report(
                    "challenge",
                    0.4,
                    challenged_agent="architect",
                    issue="Schema has no tenant column",
                    evidence="orders table is shared",
                ),
                _report("complete"),
            ],
        }
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Make orders multi-tenant", "pair"))

    assert result.status == "complete"
    assert backend.calls == ["architect", "implementer", "architect", "implementer"]
    assert "## Challenge to resolve" in backend.prompts["architect"][1]
    assert "Schema has no tenant column" in backend.prompts["architect"][1]

    kinds = _kinds(engine, result.run_id)
    raised = kinds.index("challenge_raised")
    assert kinds[raised:].index("challenge_resolved") > 0
    assert "challenge_escalated" not in kinds
    assert len(result.state.challenges["implementation->design"]) == 1
    run_dir = engine.store.run_dir(result.run_id)
    assert (run_dir / "output" / "design-attempt-2.md").is_file()


def test_second_challenge_on_same_edge_escalates_to_checkpoint(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend(
        {
            "implementer": [
                _report("challenge", 0.3, challenged_agent="architect", issue="Still wrong")
            ],
        }
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Make orders multi-tenant", "pair"))

    assert result.status == "paused"
    assert result.exit_code == EXIT_PAUSED
    assert backend.calls == ["architect", "implementer", "architect", "implementer"]
    assert "challenge_escalated" in _kinds(engine, result.run_id)
    checkpoint = engine.checkpoints.load(result.checkpoint_id)
    assert checkpoint["kind"] == "challenge"
    assert checkpoint["details"]["edge"] == "implementation->design"
    assert len(checkpoint["details"]["challenges"]) == 2

    rejected = asyncio.run(engine.resume(result.checkpoint_id, "reject", "design is fine"))
    assert rejected.status == "failed"
    assert rejected.state.failure["reason"] == "rejected"


def test_challenge_to_unknown_target_blocks_phase(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend(
        {"implementer": [_report("challenge", 0.3, challenged_agent="tester")]}
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Make orders multi-tenant", "pair"))

    assert result.status == "failed"
    assert result.state.failure["agent"] == "implementer"
    assert "report_invalid" in _kinds(engine, result.run_id)


def test_needs_input_pauses_and_resume_applies_default(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend(
        {
            "architect": [
                _report(
                    "needs_input",
                    0.6,
                    question="Which database?",
                    default="postgres",
                    options=["postgres", "sqlite"],
                    can_proceed_with_default=True,
                )
            ]
        }
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    paused = asyncio.run(engine.start("Persist sessions", "pair"))

    assert paused.status == "paused"
    assert backend.calls == ["architect"]
    checkpoint = engine.checkpoints.load(paused.checkpoint_id)
    assert checkpoint["kind"] == "needs_input"
    assert checkpoint["details"]["options"] == ["postgres", "sqlite"]
    assert engine.store.load(paused.run_id).status == "paused"

    resumed = asyncio.run(engine.resume())

    assert resumed.status == "complete"
    assert backend.calls == ["architect", "implementer"]
    assert resumed.state.decisions[-1]["decision"] == "Which database?: postgres"
    assert resumed.state.decisions[-1]["actor"] == "human"
    events = _events(engine, resumed.run_id)
    resolved = next(event for event in events if event["kind"] == "checkpoint_resolved")
    assert resolved["actor"] == "human"
    assert resolved["detail"]["decision"] == "continue"

    with pytest.raises(HiveStateError, match="already resolved"):
        asyncio.run(engine.resume(paused.checkpoint_id))
    with pytest.raises(HiveStateError, match="No open checkpoint"):
        asyncio.run(engine.resume())


def test_autonomous_run_takes_needs_input_default(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend(
        {
            "architect": [
                _report(
                    "needs_input",
                    0.6,
                    question="Which database?",
                    default="postgres",
                    can_proceed_with_default=True,
                )
            ]
        }
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Persist sessions", "pair", autonomous=True))

    assert result.status == "complete"
    assert result.state.scratchpad["design"] == "postgres"
    assert "needs_input_defaulted" in _kinds(engine, result.run_id)
    assert engine.checkpoints.list() == []


def test_phase_review_checkpoint_and_resume(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, checkpoint_after=True)
    backend = ScriptedBackend()
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    paused = asyncio.run(engine.start("Add audit log", "pair"))

    assert paused.status == "paused"
    assert engine.checkpoints.load(paused.checkpoint_id)["kind"] == "phase_review"
    assert engine.store.dashboard()["checkpoint_id"] == paused.checkpoint_id

    resumed = asyncio.run(engine.resume(paused.checkpoint_id))

    assert resumed.status == "complete"
    assert backend.calls == ["architect", "implementer"]
    assert _kinds(engine, resumed.run_id).count("phase_complete") == 2


def test_autonomous_run_skips_phase_review(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, checkpoint_after=True)
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), ScriptedBackend())

    result = asyncio.run(engine.start("Add audit log", "pair", autonomous=True))

    assert result.status == "complete"
    assert "checkpoint_created" not in _kinds(engine, result.run_id)


def test_low_confidence_pauses_and_adjust_reruns_phase(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend({"architect": [_report("complete", 0.5), _report("complete")]})
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    paused = asyncio.run(engine.start("Add audit log", "pair"))

    assert paused.status == "paused"
    checkpoint = engine.checkpoints.load(paused.checkpoint_id)
    assert checkpoint["kind"] == "low_confidence"
    assert checkpoint["details"]["score"]["category"] == "needs-review"

    with pytest.raises(HiveStateError, match="needs a note"):
        asyncio.run(engine.resume(paused.checkpoint_id, "adjust"))

    resumed = asyncio.run(engine.resume(paused.checkpoint_id, "adjust", "Use an append-only table"))

    assert resumed.status == "complete"
    assert backend.calls == ["architect", "architect", "implementer"]
    assert "Use an append-only table" in backend.prompts["architect"][1]
    assert any(item["source"] == "checkpoint" for item in resumed.state.decisions)


def test_autonomous_low_confidence_is_flagged(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend({"architect": [_report("complete", 0.5)]})
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Add audit log", "pair", autonomous=True))

    assert result.status == "complete"
    assert result.state.scratchpad["needs_extra_review"] == ["design"]
    assert "confidence_flagged" in _kinds(engine, result.run_id)


def test_autonomous_confidence_fail_on_required_phase_fails_run(tmp_path: Path) -> None:
    _design_then_implement(tmp_path)
    backend = ScriptedBackend({"architect": [_report("complete", 0.1)]})
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Add audit log", "pair", autonomous=True))

    assert result.status == "failed"
    assert result.state.failure["reason"] == "low_confidence"


def test_retriable_invocation_error_is_retried(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "implementer": [
                BackendExecutionError("rate limited", backend="claude", retriable=True),
                _report("complete"),
            ]
        }
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Add a health endpoint", "quick"))

    assert result.status == "complete"
    kinds = _kinds(engine, result.run_id)
    assert kinds.count("invocation_failed") == 1
    assert kinds.count("agent_start") == 2
    assert [item["outcome"] for item in result.state.invocations] == [
        "invocation_error",
        "complete",
    ]
    assert "attempt 1 failed: rate limited" in backend.prompts["implementer"][1]


def test_non_retriable_invocation_error_fails_phase(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {"implementer": [BackendExecutionError("binary missing", retriable=False)]}
    )
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Add a health endpoint", "quick"))

    assert result.status == "failed"
    assert result.state.failure["reason"] == "invocation_error"
    assert backend.calls == ["implementer"]


def test_large_change_injects_review_phase(tmp_path: Path) -> None:
    files = [f"src/module_{index}.py" for index in range(12)]
    backend = ScriptedBackend({"implementer": [_report("complete", files_modified=files)]})
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Rename the core package", "quick"))

    assert result.status == "complete"
    assert [phase.name for phase in result.state.phases] == [
        "implementation",
        "adaptive_review",
        "build_check",
    ]
    assert backend.calls == ["implementer", "reviewer"]
    assert "phase_injected" in _kinds(engine, result.run_id)


def test_build_failure_runs_recovery_agent(tmp_path: Path) -> None:
    (tmp_path / "check_build.py").write_text(
        "import pathlib, sys\nsys.exit(0 if pathlib.Path('fixed.txt').exists() else 1)\n",
        encoding="utf-8",
    )
    _write_workflow(
        tmp_path,
        "verify",
        [{"name": "build_check", "type": "build_verify", "on_failure": "debugger"}],
    )
    config = HiveConfig.default()
    config.project.build_command = f'"{sys.executable}" check_build.py'

    def _fix() -> None:
        (tmp_path / "fixed.txt").write_text("ok\n", encoding="utf-8")

    backend = ScriptedBackend(effects={"debugger": _fix})
    engine = WorkflowEngine(tmp_path, config, backend)

    result = asyncio.run(engine.start("Fix the build", "verify"))

    assert result.status == "complete"
    assert backend.calls == ["debugger"]
    builds = [e for e in _events(engine, result.run_id) if e["kind"] == "build_verify"]
    assert [item["detail"]["result"] for item in builds] == ["failed", "passed"]
    assert builds[1]["detail"]["recovery"] == "debugger"
    assert "exited with 1" in backend.prompts["debugger"][0]


def test_build_failure_after_recovery_pauses(tmp_path: Path) -> None:
    _write_workflow(tmp_path, "verify", [{"name": "build_check", "type": "build_verify"}])
    config = HiveConfig.default()
    config.project.build_command = f'"{sys.executable}" -c "raise SystemExit(3)"'
    engine = WorkflowEngine(tmp_path, config, ScriptedBackend())

    result = asyncio.run(engine.start("Fix the build", "verify"))

    assert result.status == "paused"
    assert engine.checkpoints.load(result.checkpoint_id)["kind"] == "build_failure"


def test_only_agent_runs_single_phase(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)

    result = asyncio.run(engine.start("Write tests for parser", only_agent="tester"))

    assert result.status == "complete"
    assert result.state.workflow == "only-tester"
    assert backend.calls == ["tester"]


def test_abort_marks_paused_run_failed(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, checkpoint_after=True)
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), ScriptedBackend())
    paused = asyncio.run(engine.start("Add audit log", "pair"))

    aborted = engine.abort("changed priorities")

    assert aborted.status == "failed"
    assert aborted.state.failure["reason"] == "aborted"
    assert "run_aborted" in _kinds(engine, paused.run_id)
    with pytest.raises(HiveStateError, match="already failed"):
        engine.abort()


def test_aborted_run_cannot_be_resumed(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, checkpoint_after=True)
    backend = ScriptedBackend()
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)
    paused = asyncio.run(engine.start("Add audit log", "pair"))

    engine.abort("changed priorities")

    checkpoint = engine.checkpoints.load(paused.checkpoint_id)
    assert checkpoint["resolution"]["decision"] == "reject"
    assert engine.store.dashboard()["checkpoint_id"] is None
    with pytest.raises(HiveStateError, match="No open checkpoint"):
        asyncio.run(engine.resume())
    with pytest.raises(HiveStateError, match="already resolved"):
        asyncio.run(engine.resume(paused.checkpoint_id))
    assert engine.store.load(paused.run_id).status == "failed"
    assert backend.calls == ["architect"]


def test_resume_refuses_checkpoint_of_terminal_run(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, checkpoint_after=True)
    backend = ScriptedBackend()
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), backend)
    paused = asyncio.run(engine.start("Add audit log", "pair"))
    stored = engine.store.load(paused.run_id)
    stored.status = "failed"
    engine.store.save(stored)

    with pytest.raises(HiveStateError, match="already failed"):
        asyncio.run(engine.resume(paused.checkpoint_id))

    assert engine.checkpoints.load(paused.checkpoint_id)["resolution"] is None
    assert backend.calls == ["architect"]


def test_checkpoint_snapshot_matches_stored_run(tmp_path: Path) -> None:
    _design_then_implement(tmp_path, checkpoint_after=True)
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), ScriptedBackend())
    paused = asyncio.run(engine.start("Add audit log", "pair"))
    checkpoint = engine.checkpoints.load(paused.checkpoint_id)

    restored = engine.checkpoints.restore(checkpoint)

    assert restored.to_dict() == engine.store.load(paused.run_id).to_dict()
    assert restored.to_dict() == engine.checkpoints.restore(checkpoint).to_dict()
    assert restored.status == "paused"
    assert restored.checkpoint_id == paused.checkpoint_id

    fresh = WorkflowEngine(tmp_path, HiveConfig.default(), ScriptedBackend())
    resumed = asyncio.run(fresh.resume())
    assert resumed.status == "complete"
    assert resumed.state.phase_index == len(restored.phases)


def test_empty_objective_is_rejected(tmp_path: Path) -> None:
    engine = WorkflowEngine(tmp_path, HiveConfig.default(), ScriptedBackend())

    with pytest.raises(WorkflowError, match="Objective must not be empty"):
        asyncio.run(engine.start("   ", "quick"))
