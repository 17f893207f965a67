from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from hive.backends.base import AgentBackend
from hive.challenge import ChallengeRouter
from hive.checkpoint import CheckpointKind, CheckpointManager, new_checkpoint_id
from hive.checks import detect_build_command, run_command
from hive.confidence import CLEAR_PASS, FAIL, NEEDS_REVIEW, ConfidenceEvaluator, ConfidenceScore
from hive.config import HiveConfig
from hive.context import ContextAssembler
from hive.errors import HiveStateError, InvocationError, MergeConflictError, WorkflowError
from hive.events import EventHook, EventLog
from hive.handoff import HandoffStore, build_handoff
from hive.invoker import AgentInvoker, record_cost
from hive.models import AgentInvocation, Challenge, Phase, Run
from hive.parallel import MergeOutcome, ParallelCoordinator, ParallelTask
from hive.report import HiveReport, blocked_report, parse_report
from hive.state import RunStateStore, read_json
from hive.tracker import TaskTracker
from hive.workflows import condition_holds, load_workflow, single_agent_workflow

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PAUSED = 3

HIGH_SEVERITIES = {"high", "critical"}
REVIEW_AGENTS = {"reviewer", "security"}

# A phase handler returns one of these, or a RunResult when the run stops.
COMPLETE = "complete"
SKIPPED = "skipped"


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d-%H%M%S')}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class RunResult:
    run_id: str
    status: str
    state: Run
    checkpoint_id: str | None = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        if self.status == "complete":
            return EXIT_SUCCESS
        if self.status == "paused":
            return EXIT_PAUSED
        return EXIT_FAILURE


class WorkflowEngine:
    """Drives a run through its phases; the only writer of run state."""

    def __init__(
        self,
        repo_root: Path,
        config: HiveConfig,
        backend: AgentBackend,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.store = RunStateStore(self.repo_root)
        self.checkpoints = CheckpointManager(self.store.hive_dir)
        self.invoker = AgentInvoker(config, backend)
        self.assembler = ContextAssembler(config, self.repo_root)
        self.evaluator = ConfidenceEvaluator(config, self.repo_root, self.invoker)
        self.router = ChallengeRouter(config.workflow.max_challenge_rounds)
        self.tracker = TaskTracker(config.tracker.binary, self.repo_root)
        self.event_hook = event_hook
        self._logs: dict[str, EventLog] = {}

    def events_for(self, run_id: str) -> EventLog:
        if run_id not in self._logs:
            self._logs[run_id] = EventLog(
                self.store.run_dir(run_id) / "events.jsonl",
                run_id,
                hook=self.event_hook,
            )
        return self._logs[run_id]

    # -- public operations -------------------------------------------------

    async def start(
        self,
        objective: str,
        workflow: str | None = None,
        *,
        autonomous: bool | None = None,
        context_files: list[str] | tuple[str, ...] = (),
        only_agent: str | None = None,
    ) -> RunResult:
        if not objective.strip():
            raise WorkflowError("Objective must not be empty.")
        if only_agent:
            definition = single_agent_workflow(only_agent)
        else:
            definition = load_workflow(
                workflow or self.config.workflow.default_workflow, self.repo_root
            )

        run = Run(
            run_id=new_run_id(),
            objective=objective.strip(),
            workflow=definition.name,
            phases=list(definition.phases),
            status="running",
            autonomous=self.config.workflow.autonomous if autonomous is None else autonomous,
            context_files=[str(item) for item in context_files],
        )
        self.store.save(run)
        events = self.events_for(run.run_id)
        events.emit(
            "run_started",
            objective=run.objective,
            workflow=run.workflow,
            phases=[phase.name for phase in run.phases],
            autonomous=run.autonomous,
        )
        logger.info("started run %s (%s)", run.run_id, run.workflow)
        return await self._drive(run, events)

    async def resume(
        self,
        checkpoint_id: str | None = None,
        decision: str = "continue",
        note: str | None = None,
    ) -> RunResult:
        if checkpoint_id:
            checkpoint = self.checkpoints.load(checkpoint_id)
        else:
            checkpoint = self.checkpoints.latest_open(self.store.current_run_id())
            if checkpoint is None:
                raise HiveStateError("No open checkpoint to resume from.")
        if checkpoint.get("resolution"):
            raise HiveStateError(f"Checkpoint already resolved: {checkpoint['checkpoint_id']}")
        if decision == "adjust" and not (note or "").strip():
            raise HiveStateError("An 'adjust' decision needs a note describing the change.")
        stored = self.store.load(str(checkpoint["run_id"]))
        if stored.terminal:
            raise HiveStateError(f"Run {stored.run_id} is already {stored.status}.")

        run = self.checkpoints.restore(checkpoint)
        run.revision = self.store.revision(run.run_id)
        events = self.events_for(run.run_id)
        self.checkpoints.resolve(checkpoint["checkpoint_id"], decision, note)
        events.emit(
            "checkpoint_resolved",
            actor="human",
            checkpoint_id=checkpoint["checkpoint_id"],
            checkpoint_kind=checkpoint["kind"],
            decision=decision,
            note=note,
        )
        run.checkpoint_id = None
        phase = run.current_phase
        if phase is None:
            raise HiveStateError(f"Checkpoint {checkpoint['checkpoint_id']} has no current phase.")

        if decision == "reject":
            return self._fail(
                run,
                events,
                phase,
                reason="rejected",
                diagnostics=[note or f"Rejected at checkpoint {checkpoint['checkpoint_id']}."],
            )

        adjustment = None
        if decision == "continue":
            details = checkpoint.get("details") or {}
            if checkpoint["kind"] == "needs_input" and details.get("default") is not None:
                run.add_decision(
                    actor="human",
                    decision=f"{details.get('question') or 'input'}: {details['default']}",
                    rationale="default accepted at checkpoint",
                    phase=phase.name,
                    source="checkpoint",
                )
            if checkpoint["kind"] != "phase_review":
                events.emit(
                    "phase_complete",
                    actor=phase.actor,
                    phase=phase.name,
                    index=run.phase_index,
                    via="checkpoint",
                )
            run.phase_index += 1
        else:
            adjustment = note
            run.add_decision(
                actor="human",
                decision=str(note),
                rationale=f"adjustment at checkpoint {checkpoint['checkpoint_id']}",
                phase=phase.name,
                source="checkpoint",
            )
        run.status = "running"
        self.store.save(run)
        return await self._drive(run, events, adjustment=adjustment)

    def abort(self, reason: str = "aborted", run_id: str | None = None) -> RunResult:
        run = self.store.load(run_id) if run_id else self.store.load_current()
        if run.terminal:
            raise HiveStateError(f"Run {run.run_id} is already {run.status}.")
        return self._abort(run, self.events_for(run.run_id), reason)

    async def comb(self, run_id: str | None = None) -> MergeOutcome:
        run = self.store.load(run_id) if run_id else self.store.load_current()
        events = self.events_for(run.run_id)
        outcome = await self._coordinator(run, events).comb(run)
        if outcome.unresolved:
            first = outcome.unresolved[0]
            raise MergeConflictError(
                f"{len(outcome.unresolved)} branch(es) still conflict after reconciliation.",
                branch=str(first["branch"]),
                files=list(first["files"]),
            )
        return outcome

    # -- state machine -----------------------------------------------------

    async def _drive(
        self,
        run: Run,
        events: EventLog,
        *,
        adjustment: str | None = None,
    ) -> RunResult:
        try:
            while run.phase_index < len(run.phases):
                phase = run.phases[run.phase_index]
                if not condition_holds(phase.condition, self.repo_root):
                    events.emit(
                        "phase_skipped",
                        actor=phase.actor,
                        phase=phase.name,
                        reason=f"condition '{phase.condition}' is false",
                    )
                    run.phase_index += 1
                    self.store.save(run)
                    continue

                run.status = "running"
                run.current_agent = phase.actor
                self.store.save(run)
                events.emit(
                    "phase_start", actor=phase.actor, phase=phase.name, index=run.phase_index
                )

                if phase.step_type == "build_verify":
                    outcome = await self._build_verify(run, phase, events)
                elif phase.step_type == "fix_blocking":
                    outcome = await self._fix_blocking(run, phase, events)
                elif phase.step_type == "parallel":
                    outcome = await self._parallel(run, phase, events)
                else:
                    outcome = await self._run_agent_phase(run, phase, events, adjustment=adjustment)
                adjustment = None

                if isinstance(outcome, RunResult):
                    return outcome
                if outcome == COMPLETE:
                    events.emit(
                        "phase_complete",
                        actor=phase.actor,
                        phase=phase.name,
                        index=run.phase_index,
                    )
                    if phase.checkpoint_after and not run.autonomous:
                        return self._pause(
                            run,
                            events,
                            "phase_review",
                            f"Review the output of '{phase.name}' before continuing.",
                        )
                run.phase_index += 1
                self.store.save(run)
            return self._complete(run, events)
        except (asyncio.CancelledError, KeyboardInterrupt):
            self._abort(run, events, "cancelled")
            raise

    async def _run_agent_phase(
        self,
        run: Run,
        phase: Phase,
        events: EventLog,
        *,
        adjustment: str | None = None,
    ) -> str | RunResult:
        execution = await self._execute_agent(run, phase, events, adjustment=adjustment)
        if isinstance(execution, RunResult):
            return execution
        report, score = execution

        while report.status == "challenge":
            try:
                challenge = self.router.challenge_from_report(run, run.phase_index, report)
            except WorkflowError as exc:
                events.emit(
                    "report_invalid",
                    actor=phase.actor,
                    phase=phase.name,
                    diagnostics=[str(exc)],
                )
                report = blocked_report([str(exc)], summary=report.summary)
                break
            route = self.router.route(run, challenge, events)
            self.store.save(run)
            if route == "escalate":
                return self._pause(
                    run,
                    events,
                    "challenge",
                    f"'{challenge.challenger}' challenged '{challenge.challenged}' again.",
                    details={"edge": challenge.edge, "challenges": run.challenges[challenge.edge]},
                )
            replayed = await self._replay(run, challenge, events)
            if isinstance(replayed, RunResult):
                return replayed
            execution = await self._execute_agent(run, phase, events)
            if isinstance(execution, RunResult):
                return execution
            report, score = execution

        return self._route_report(
            run, phase, events, report, score, agent=phase.agent or phase.actor
        )

    async def _replay(self, run: Run, challenge: Challenge, events: EventLog) -> None | RunResult:
        target = run.phases[challenge.challenged_index]
        execution = await self._execute_agent(run, target, events, challenge=challenge)
        if isinstance(execution, RunResult):
            return execution
        report, _ = execution
        self.router.resolved(challenge, events, report)
        if report.status == "blocked" and target.required:
            return self._fail(
                run,
                events,
                target,
                reason="blocked",
                diagnostics=report.blockers or report.diagnostics,
            )
        self._record_decisions(run, target, report, target.actor)
        self._record_handoff(
            run,
            target,
            report,
            agent=target.actor,
            to_phase=run.phases[run.phase_index].name,
        )
        return None

    async def _execute_agent(
        self,
        run: Run,
        phase: Phase,
        events: EventLog,
        *,
        agent: str | None = None,
        challenge: Challenge | None = None,
        adjustment: str | None = None,
        diagnostics: list[str] | None = None,
        task: str | None = None,
    ) -> tuple[HiveReport, ConfidenceScore | None] | RunResult:
        role = agent or phase.agent or phase.actor
        definition = self.assembler.agent_for(role)
        run_dir = self.store.run_dir(run.run_id)
        max_attempts = max(1, int(self.config.workflow.max_attempts))
        errors: list[str] = []

        for attempt in range(1, max_attempts + 1):
            bundle = self.assembler.assemble(
                run,
                phase,
                agent=role,
                challenge=challenge,
                adjustment=adjustment,
                diagnostics=[*(diagnostics or []), *errors],
                task=task,
            )
            sequence = 1 + sum(1 for item in run.invocations if item.get("phase") == phase.name)
            artifact = run_dir / "output" / f"{phase.name}-attempt-{sequence}.md"
            record = AgentInvocation(
                phase=phase.name,
                agent=role,
                attempt=attempt,
                context={"digest": bundle.digest(), "bundle": bundle.to_dict()},
                artifact=str(artifact.relative_to(self.repo_root)),
            )
            run.current_agent = role
            events.emit(
                "agent_start",
                actor=role,
                phase=phase.name,
                attempt=attempt,
                digest=bundle.digest(),
                challenge=challenge.edge if challenge else None,
            )
            try:
                result = await self.invoker.invoke(
                    agent=role,
                    system_prompt=definition.system_prompt,
                    prompt=bundle.render(),
                    artifact_path=artifact,
                )
            except InvocationError as exc:
                errors.append(f"attempt {attempt} failed: {exc}")
                record.outcome = "invocation_error"
                record.exit_code = exc.exit_code
                record.error = str(exc)
                run.invocations.append(record.to_dict())
                events.emit(
                    "invocation_failed",
                    actor=role,
                    phase=phase.name,
                    attempt=attempt,
                    error=str(exc),
                    backend=exc.backend,
                    retriable=exc.retriable,
                )
                self.store.save(run)
                if not exc.retriable:
                    break
                backoff = float(self.config.workflow.retry_backoff_seconds)
                if backoff > 0 and attempt < max_attempts:
                    await asyncio.sleep(backoff * attempt)
                continue

            cost = record_cost(run_dir / "cost.json", result)
            run.cost = {
                "total_cost_usd": cost["total_cost_usd"],
                "total_calls": cost["total_calls"],
            }
            report = parse_report(result.transcript)
            if not report.parsed:
                events.emit(
                    "report_invalid",
                    actor=role,
                    phase=phase.name,
                    attempt=attempt,
                    diagnostics=report.diagnostics,
                )

            score: ConfidenceScore | None = None
            signals: dict[str, Any] | None = None
            if report.status in {"complete", "partial"}:
                collected = await self.evaluator.collect(
                    definition,
                    report,
                    objective=run.objective,
                    phase=phase.name,
                    transcript=result.transcript,
                    artifact_dir=artifact.parent,
                    planned_files=bundle.file_targets,
                )
                score = self.evaluator.score(collected)
                signals = collected.to_dict()

            record.exit_code = result.exit_code
            record.outcome = report.status
            record.report = report.to_dict()
            record.confidence = {**score.to_dict(), "signals": signals} if score else None
            record.duration_seconds = result.duration_seconds
            record.cost_usd = result.cost_usd
            run.invocations.append(record.to_dict())
            events.emit(
                "agent_complete",
                actor=role,
                phase=phase.name,
                attempt=attempt,
                status=report.status,
                confidence=report.confidence,
                score=score.score if score else None,
                category=score.category if score else None,
                duration_seconds=result.duration_seconds,
            )
            self.store.save(run)
            return report, score

        return self._fail(
            run,
            events,
            phase,
            reason="invocation_error",
            diagnostics=errors,
            agent=role,
        )

    def _route_report(
        self,
        run: Run,
        phase: Phase,
        events: EventLog,
        report: HiveReport,
        score: ConfidenceScore | None,
        *,
        agent: str,
    ) -> str | RunResult:
        if report.status == "blocked":
            diagnostics = report.blockers or report.diagnostics
            if phase.required:
                return self._fail(
                    run, events, phase, reason="blocked", diagnostics=diagnostics, agent=agent
                )
            events.emit(
                "phase_skipped",
                actor=agent,
                phase=phase.name,
                reason="blocked",
                diagnostics=diagnostics,
            )
            return SKIPPED

        self._record_decisions(run, phase, report, agent)

        if report.status == "needs_input":
            return self._needs_input(run, phase, events, report, agent=agent)

        self._adapt(run, phase, report, events)
        self._record_handoff(run, phase, report, agent=agent, to_phase=self._next_phase_name(run))

        category = score.category if score else CLEAR_PASS
        if category == CLEAR_PASS:
            return COMPLETE
        details = {"score": score.to_dict() if score else None, "summary": report.summary}
        if category == NEEDS_REVIEW:
            if run.autonomous:
                flagged = run.scratchpad.setdefault("needs_extra_review", [])
                if phase.name not in flagged:
                    flagged.append(phase.name)
                events.emit("confidence_flagged", actor=agent, phase=phase.name, **details)
                return COMPLETE
            if self.config.workflow.confidence_checkpoint:
                return self._pause(
                    run,
                    events,
                    "low_confidence",
                    f"'{phase.name}' needs review (confidence {score.score if score else 0:.2f}).",
                    details=details,
                )
            return COMPLETE

        # category == FAIL
        if not run.autonomous:
            return self._pause(
                run,
                events,
                "low_confidence",
                f"'{phase.name}' failed its confidence checks.",
                details=details,
            )
        if phase.required:
            return self._fail(
                run,
                events,
                phase,
                reason="low_confidence",
                diagnostics=[
                    f"confidence category {FAIL}",
                    *(score.components.get("hard_failures", []) if score else []),
                ],
                agent=agent,
            )
        events.emit("phase_skipped", actor=agent, phase=phase.name, reason="low_confidence")
        return SKIPPED

    def _needs_input(
        self,
        run: Run,
        phase: Phase,
        events: EventLog,
        report: HiveReport,
        *,
        agent: str,
    ) -> str | RunResult:
        payload = report.payload
        question = str(payload.get("question") or report.summary or "input required")
        default = payload.get("default")
        can_default = bool(payload.get("can_proceed_with_default")) and default is not None
        self._record_handoff(run, phase, report, agent=agent, to_phase=self._next_phase_name(run))
        if run.autonomous and can_default:
            run.scratchpad[str(payload.get("key") or phase.name)] = default
            decision = run.add_decision(
                actor=agent,
                decision=f"{question}: {default}",
                rationale="default applied in autonomous mode",
                phase=phase.name,
                source="needs_input_default",
            )
            events.emit(
                "needs_input_defaulted",
                actor=agent,
                phase=phase.name,
                question=question,
                default=default,
                decision_id=decision["id"],
            )
            return COMPLETE
        return self._pause(
            run,
            events,
            "needs_input",
            question,
            details={
                "question": question,
                "default": default,
                "options": payload.get("options") or [],
                "can_proceed_with_default": can_default,
            },
        )

    async def _build_verify(self, run: Run, phase: Phase, events: EventLog) -> str | RunResult:
        command = self.config.project.build_command or detect_build_command(self.repo_root)
        if not command:
            events.emit(
                "build_verify",
                actor=phase.actor,
                phase=phase.name,
                result="skipped",
                reason="no build command",
            )
            return COMPLETE
        timeout = self.config.project.command_timeout_seconds
        result = run_command(command, self.repo_root, timeout)
        passed = result["exit_code"] == 0
        events.emit(
            "build_verify",
            actor=phase.actor,
            phase=phase.name,
            command=command,
            exit_code=result["exit_code"],
            result="passed" if passed else "failed",
        )
        if passed:
            return COMPLETE

        recovery = phase.on_failure or self.config.workflow.recovery_agent
        diagnostics = [
            f"`{command}` exited with {result['exit_code']}",
            result["stderr_tail"] or result["stdout_tail"],
        ]
        execution = await self._execute_agent(
            run,
            phase,
            events,
            agent=recovery,
            diagnostics=[item for item in diagnostics if item],
            task="The build is failing. Fix the errors below without changing intended behaviour.",
        )
        if isinstance(execution, RunResult):
            return execution
        report, _ = execution
        self._record_decisions(run, phase, report, recovery)

        result = run_command(command, self.repo_root, timeout)
        passed = result["exit_code"] == 0
        events.emit(
            "build_verify",
            actor=phase.actor,
            phase=phase.name,
            command=command,
            exit_code=result["exit_code"],
            result="passed" if passed else "failed",
            recovery=recovery,
        )
        if passed:
            return COMPLETE
        details = {
            "command": command,
            "exit_code": result["exit_code"],
            "output": result["stderr_tail"] or result["stdout_tail"],
        }
        if not run.autonomous:
            return self._pause(
                run,
                events,
                "build_failure",
                f"`{command}` still fails after {recovery}.",
                details=details,
            )
        if phase.required:
            return self._fail(
                run,
                events,
                phase,
                reason="build_failure",
                diagnostics=[f"`{command}` exited with {result['exit_code']}", details["output"]],
            )
        events.emit("phase_skipped", actor=phase.actor, phase=phase.name, reason="build_failure")
        return SKIPPED

    async def _fix_blocking(self, run: Run, phase: Phase, events: EventLog) -> str | RunResult:
        if not (self.config.tracker.enabled and self.tracker.available):
            events.emit(
                "phase_skipped",
                actor=phase.actor,
                phase=phase.name,
                reason="task tracker unavailable",
            )
            return SKIPPED
        blocking = [
            task
            for task in self.tracker.open_tasks()
            if task.title.upper().startswith("BLOCKING")
        ]
        events.emit(
            "fix_blocking",
            actor=phase.actor,
            phase=phase.name,
            tasks=[task.id for task in blocking],
        )
        if not blocking:
            return COMPLETE
        task_text = "Fix these blocking issues, then close them in the task tracker:\n" + "\n".join(
            f"- {task.id}: {task.title}" for task in blocking
        )
        agent = phase.agent or "implementer"
        execution = await self._execute_agent(run, phase, events, agent=agent, task=task_text)
        if isinstance(execution, RunResult):
            return execution
        report, score = execution
        return self._route_report(run, phase, events, report, score, agent=agent)

    def _coordinator(self, run: Run, events: EventLog) -> ParallelCoordinator:
        return ParallelCoordinator(
            self.config,
            self.repo_root,
            self.invoker,
            self.assembler,
            events,
            self.store.run_dir(run.run_id),
        )

    def _parallel_tasks(self, phase: Phase) -> list[ParallelTask]:
        agent = phase.agent or "implementer"
        shared = list(self.config.parallel.shared_labels)
        if phase.tasks:
            return [
                ParallelTask.parse(item, agent=agent, shared_labels=shared)
                for item in phase.tasks
            ]
        if self.config.tracker.enabled and self.tracker.available:
            return [
                ParallelTask.from_tracker(task, agent=agent, shared_labels=shared)
                for task in self.tracker.ready()
            ]
        return []

    async def _parallel(self, run: Run, phase: Phase, events: EventLog) -> str | RunResult:
        tasks = self._parallel_tasks(phase)
        if not tasks:
            events.emit(
                "phase_skipped", actor=phase.actor, phase=phase.name, reason="no ready tasks"
            )
            return SKIPPED
        try:
            outcome = await self._coordinator(run, events).execute(run, phase, tasks)
        except HiveStateError as exc:
            return self._fail(
                run, events, phase, reason="parallel_unavailable", diagnostics=[str(exc)]
            )
        for item in outcome.results:
            run.invocations.extend(item.invocations)
        cost = read_json(self.store.run_dir(run.run_id) / "cost.json")
        if cost:
            run.cost = {
                "total_cost_usd": cost["total_cost_usd"],
                "total_calls": cost["total_calls"],
            }
        run.scratchpad[f"{phase.name}.merged"] = list(outcome.merge.merged)
        if outcome.merge.unresolved:
            return self._pause(
                run,
                events,
                "merge_conflict",
                f"{len(outcome.merge.unresolved)} branch(es) could not be merged.",
                details=outcome.merge.to_dict(),
            )
        if outcome.failed and phase.required:
            return self._fail(
                run,
                events,
                phase,
                reason="parallel_task_failed",
                diagnostics=[f"{item.task_id}: {item.error}" for item in outcome.failed],
            )
        return COMPLETE

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _next_phase_name(run: Run) -> str:
        index = run.phase_index + 1
        return run.phases[index].name if index < len(run.phases) else "end"

    @staticmethod
    def _record_decisions(run: Run, phase: Phase, report: HiveReport, agent: str) -> None:
        for item in report.decisions:
            run.add_decision(
                actor=agent,
                decision=item["decision"],
                rationale=item["rationale"],
                phase=phase.name,
            )

    def _record_handoff(
        self,
        run: Run,
        phase: Phase,
        report: HiveReport,
        *,
        agent: str,
        to_phase: str,
    ) -> None:
        store = HandoffStore(self.store.run_dir(run.run_id))
        document = build_handoff(
            run,
            phase,
            report,
            agent=agent,
            to_phase=to_phase,
            sequence=store.next_sequence(phase.name, to_phase),
        )
        store.write(document)
        run.handoffs.append(document.to_dict())
        self.events_for(run.run_id).emit(
            "handoff_written",
            actor=agent,
            handoff_id=document.handoff_id,
            to_phase=to_phase,
        )

    def _adapt(self, run: Run, phase: Phase, report: HiveReport, events: EventLog) -> None:
        if not self.config.workflow.adapt_enabled or phase.agent in REVIEW_AGENTS:
            return
        payload = report.payload
        issues = [item for item in payload.get("issues", []) or [] if isinstance(item, dict)]
        severities = {str(item.get("severity", "")).lower() for item in issues}
        severities.add(str(payload.get("max_severity") or "").lower())
        security = bool(payload.get("security_sensitive")) or any(
            str(item.get("category", "")).lower() == "security" for item in issues
        )
        remaining = {item.agent for item in run.phases[run.phase_index + 1 :]}

        injected: Phase | None = None
        large = len(report.files_modified) > self.config.workflow.adapt_files_threshold
        if (
            security
            and "security" not in remaining
            and "security_review" not in run.injected_phases
        ):
            injected = Phase(
                name="security_review",
                agent="security",
                required=False,
                needs_handoff_from=phase.agent,
                task="Audit the latest changes for security issues.",
            )
        elif (
            (large or severities & HIGH_SEVERITIES)
            and "reviewer" not in remaining
            and "adaptive_review" not in run.injected_phases
        ):
            injected = Phase(
                name="adaptive_review",
                agent="reviewer",
                required=False,
                needs_handoff_from=phase.agent,
                task="Review the latest changes; they are large or flagged high severity.",
            )
        if injected is None:
            return
        run.phases.insert(run.phase_index + 1, injected)
        run.injected_phases.append(injected.name)
        events.emit(
            "phase_injected",
            actor=phase.actor,
            phase=injected.name,
            agent=injected.agent,
            after=phase.name,
            files_modified=len(report.files_modified),
        )

    def _pause(
        self,
        run: Run,
        events: EventLog,
        kind: CheckpointKind,
        reason: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> RunResult:
        checkpoint_id = new_checkpoint_id()
        phase = run.current_phase
        events.emit(
            "checkpoint_created",
            actor=phase.actor if phase else "engine",
            checkpoint_id=checkpoint_id,
            checkpoint_kind=kind,
            phase=phase.name if phase else None,
            reason=reason,
        )
        run.status = "paused"
        run.checkpoint_id = checkpoint_id
        self.store.save(run)
        self.checkpoints.create(
            run,
            kind,
            reason,
            details=details,
            event_offset=events.offset,
            checkpoint_id=checkpoint_id,
        )
        logger.info("run %s paused at %s (%s)", run.run_id, checkpoint_id, kind)
        return RunResult(run.run_id, run.status, run, checkpoint_id=checkpoint_id, message=reason)

    def _fail(
        self,
        run: Run,
        events: EventLog,
        phase: Phase,
        *,
        reason: str,
        diagnostics: list[str],
        agent: str | None = None,
    ) -> RunResult:
        actor = agent or phase.actor
        events.emit(
            "phase_failed",
            actor=actor,
            phase=phase.name,
            agent=actor,
            reason=reason,
            diagnostics=list(diagnostics),
        )
        run.status = "failed"
        run.failure = {
            "phase": phase.name,
            "agent": actor,
            "reason": reason,
            "diagnostics": list(diagnostics),
        }
        self.store.save(run)
        message = f"Phase '{phase.name}' ({actor}) failed: {reason}"
        logger.warning("run %s: %s", run.run_id, message)
        return RunResult(run.run_id, run.status, run, message=message)

    def _abort(self, run: Run, events: EventLog, reason: str) -> RunResult:
        phase = run.current_phase
        events.emit("run_aborted", reason=reason, phase=phase.name if phase else None)
        for checkpoint in self.checkpoints.list(run.run_id):
            if checkpoint.get("resolution"):
                continue
            self.checkpoints.resolve(checkpoint["checkpoint_id"], "reject", reason)
            events.emit(
                "checkpoint_resolved",
                checkpoint_id=checkpoint["checkpoint_id"],
                checkpoint_kind=checkpoint["kind"],
                decision="reject",
                note=reason,
            )
        run.checkpoint_id = None
        run.status = "failed"
        run.failure = {
            "phase": phase.name if phase else None,
            "agent": run.current_agent,
            "reason": "aborted",
            "diagnostics": [reason],
        }
        self.store.save(run)
        return RunResult(run.run_id, run.status, run, message=f"Run aborted: {reason}")

    def _complete(self, run: Run, events: EventLog) -> RunResult:
        events.emit(
            "run_complete",
            workflow=run.workflow,
            phases=len(run.phases),
            decisions=len(run.decisions),
            cost=run.cost,
        )
        run.status = "complete"
        run.current_agent = None
        self.store.save(run)
        logger.info("run %s complete", run.run_id)
        return RunResult(run.run_id, run.status, run, message="Run complete.")
