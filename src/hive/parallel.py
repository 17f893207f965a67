from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.config import HiveConfig
from hive.context import ContextAssembler
from hive.errors import HiveStateError, InvocationError
from hive.events import EventLog
from hive.git import WorktreeManager
from hive.invoker import AgentInvoker, record_cost
from hive.models import AgentInvocation, Phase, Run
from hive.report import parse_report
from hive.state import atomic_write_json, read_json
from hive.tracker import Task

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("<<<<<<< ", ">>>>>>> ")


@dataclass(slots=True)
class ParallelTask:
    task_id: str
    title: str
    agent: str = "implementer"
    blocked_by: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    shared: bool = False

    @classmethod
    def from_tracker(cls, task: Task, *, agent: str, shared_labels: list[str]) -> ParallelTask:
        return cls(
            task_id=task.id,
            title=task.title,
            agent=agent,
            blocked_by=list(task.blocked_by),
            labels=list(task.labels),
            shared=bool(set(task.labels) & set(shared_labels)),
        )

    @classmethod
    def parse(cls, item: str, *, agent: str, shared_labels: list[str]) -> ParallelTask:
        task_id, _, title = item.partition(":")
        task_id = task_id.strip()
        title = title.strip() or task_id
        labels = [label for label in shared_labels if label in task_id.lower()]
        return cls(task_id=task_id, title=title, agent=agent, labels=labels, shared=bool(labels))


@dataclass(slots=True)
class BranchResult:
    task_id: str
    branch: str
    worktree: str
    status: str
    shared: bool = False
    commit: str | None = None
    files: list[str] = field(default_factory=list)
    summary: str = ""
    error: str | None = None
    invocations: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "branch": self.branch,
            "worktree": self.worktree,
            "status": self.status,
            "shared": self.shared,
            "commit": self.commit,
            "files": list(self.files),
            "summary": self.summary,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BranchResult:
        return cls(
            task_id=str(payload["task_id"]),
            branch=str(payload["branch"]),
            worktree=str(payload.get("worktree") or ""),
            status=str(payload.get("status") or "pending_merge"),
            shared=bool(payload.get("shared", False)),
            commit=payload.get("commit"),
            files=[str(item) for item in payload.get("files", [])],
            summary=str(payload.get("summary") or ""),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class MergeOutcome:
    merged: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    unresolved: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged": list(self.merged),
            "resolved": list(self.resolved),
            "unresolved": [dict(item) for item in self.unresolved],
        }


@dataclass(slots=True)
class ParallelOutcome:
    results: list[BranchResult]
    merge: MergeOutcome

    @property
    def failed(self) -> list[BranchResult]:
        return [item for item in self.results if item.status == "failed"]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.merge.unresolved


def merge_order(results: list[BranchResult]) -> list[BranchResult]:
    """Shared/infrastructure branches first, then by task id."""
    return sorted(results, key=lambda item: (not item.shared, item.task_id))


class ParallelCoordinator:
    """Runs independent tasks in their own worktrees, then merges them one at a time."""

    def __init__(
        self,
        config: HiveConfig,
        repo_root: Path,
        invoker: AgentInvoker,
        assembler: ContextAssembler,
        events: EventLog,
        run_dir: Path,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.invoker = invoker
        self.assembler = assembler
        self.events = events
        self.run_dir = run_dir
        self.git = WorktreeManager(self.repo_root)
        self.state_file = run_dir / "parallel.json"
        self._git_lock = asyncio.Lock()

    def _branch(self, run: Run, task: ParallelTask) -> str:
        return f"{self.config.parallel.branch_prefix}/{run.run_id}/{task.task_id}"

    def _worktree(self, run: Run, task: ParallelTask) -> Path:
        return self.repo_root / self.config.parallel.worktree_dir / run.run_id / task.task_id

    def _fail_task(self, task: ParallelTask, result: BranchResult, error: str) -> BranchResult:
        result.status = "failed"
        result.error = error
        self.events.emit(
            "parallel_task_failed",
            actor=task.agent,
            task_id=task.task_id,
            error=error,
        )
        return result

    async def _invoke_task(
        self,
        run: Run,
        phase: Phase,
        task: ParallelTask,
        result: BranchResult,
    ) -> str | None:
        """Invoke the task's agent until it reports, returning an error when every attempt fails."""
        definition = self.assembler.agent_for(task.agent)
        worktree = Path(result.worktree)
        max_attempts = max(1, int(self.config.workflow.max_attempts))
        errors: list[str] = []

        for attempt in range(1, max_attempts + 1):
            bundle = self.assembler.assemble(
                run,
                phase,
                agent=task.agent,
                diagnostics=list(errors),
                task=f"Task {task.task_id}: {task.title}",
            )
            artifact = self.run_dir / "output" / f"{phase.name}-{task.task_id}-attempt-{attempt}.md"
            record = AgentInvocation(
                phase=phase.name,
                agent=task.agent,
                attempt=attempt,
                context={"digest": bundle.digest(), "task_id": task.task_id},
                artifact=str(artifact.relative_to(self.repo_root)),
            )
            try:
                invocation = await self.invoker.invoke(
                    agent=task.agent,
                    system_prompt=definition.system_prompt,
                    prompt=bundle.render(),
                    artifact_path=artifact,
                    working_directory=worktree,
                )
            except InvocationError as exc:
                errors.append(f"attempt {attempt} failed: {exc}")
                record.outcome = "invocation_error"
                record.exit_code = exc.exit_code
                record.error = str(exc)
                result.invocations.append(record.to_dict())
                self.events.emit(
                    "invocation_failed",
                    actor=task.agent,
                    phase=phase.name,
                    task_id=task.task_id,
                    attempt=attempt,
                    error=str(exc),
                    retriable=exc.retriable,
                )
                if not exc.retriable:
                    break
                backoff = float(self.config.workflow.retry_backoff_seconds)
                if backoff > 0 and attempt < max_attempts:
                    await asyncio.sleep(backoff * attempt)
                continue

            record_cost(self.run_dir / "cost.json", invocation)
            report = parse_report(invocation.transcript)
            record.exit_code = invocation.exit_code
            record.outcome = report.status
            record.report = report.to_dict()
            record.duration_seconds = invocation.duration_seconds
            record.cost_usd = invocation.cost_usd
            result.invocations.append(record.to_dict())
            result.summary = report.summary
            if report.status == "blocked":
                return "; ".join(report.blockers or report.diagnostics) or "blocked"
            return None

        return "; ".join(errors) or "invocation failed"

    async def _run_task(
        self,
        run: Run,
        phase: Phase,
        task: ParallelTask,
        result: BranchResult,
        base: str,
        semaphore: asyncio.Semaphore,
        finished: dict[str, asyncio.Event],
    ) -> BranchResult:
        worktree = Path(result.worktree)
        try:
            for dependency in task.blocked_by:
                if dependency in finished:
                    await finished[dependency].wait()
            async with semaphore:
                self.events.emit(
                    "parallel_dispatch",
                    actor=task.agent,
                    phase=phase.name,
                    task_id=task.task_id,
                    title=task.title,
                    branch=result.branch,
                )
                # Worktree creation touches the shared repository metadata.
                async with self._git_lock:
                    await asyncio.to_thread(self.git.add_worktree, worktree, result.branch, base)
                error = await self._invoke_task(run, phase, task, result)
                if error is not None:
                    return self._fail_task(task, result, error)
                result.commit = await asyncio.to_thread(
                    self.git.commit_all, worktree, f"hive: {task.task_id} {task.title}".strip()
                )
                if result.commit:
                    result.files = await asyncio.to_thread(
                        self.git.changed_files, base, result.branch
                    )
                result.status = "pending_merge" if result.commit else "empty"
                self.events.emit(
                    "parallel_task_complete",
                    actor=task.agent,
                    task_id=task.task_id,
                    branch=result.branch,
                    commit=result.commit,
                    files=result.files,
                )
                return result
        except HiveStateError as exc:
            logger.warning("parallel task %s failed: %s", task.task_id, exc)
            return self._fail_task(task, result, str(exc))
        finally:
            finished[task.task_id].set()

    def _write_state(
        self,
        run: Run,
        phase_name: str,
        base: str,
        results: list[BranchResult],
    ) -> None:
        atomic_write_json(
            self.state_file,
            {
                "run_id": run.run_id,
                "phase": phase_name,
                "base": base,
                "target_branch": self.git.current_branch(),
                "branches": [item.to_dict() for item in results],
            },
        )

    def _cleanup(self, results: list[BranchResult]) -> None:
        for item in results:
            if item.worktree:
                self.git.remove_worktree(Path(item.worktree))
            # Committed but unmerged branches stay for a later resolution.
            if item.status not in {"pending_merge", "conflict"}:
                self.git.delete_branch(item.branch)
        self.git.prune()

    async def execute(self, run: Run, phase: Phase, tasks: list[ParallelTask]) -> ParallelOutcome:
        if not tasks:
            raise HiveStateError(f"Parallel phase '{phase.name}' has no ready tasks.")
        ids = [task.task_id for task in tasks]
        if len(set(ids)) != len(ids):
            raise HiveStateError(f"Parallel phase '{phase.name}' has duplicate task ids.")
        if not self.git.is_repository():
            raise HiveStateError(f"Parallel phase '{phase.name}' needs a git repository.")

        base = self.git.head_sha()
        # Disabled parallelism keeps the worktree/merge path with a single slot.
        slots = self.config.parallel.max_parallel if self.config.parallel.enabled else 1
        semaphore = asyncio.Semaphore(max(1, slots))
        finished = {task.task_id: asyncio.Event() for task in tasks}
        results = [
            BranchResult(
                task_id=task.task_id,
                branch=self._branch(run, task),
                worktree=str(self._worktree(run, task)),
                status="pending",
                shared=task.shared,
            )
            for task in tasks
        ]
        logger.info("dispatching %d parallel tasks for %s", len(tasks), phase.name)

        pending = [
            asyncio.create_task(
                self._run_task(run, phase, task, result, base, semaphore, finished)
            )
            for task, result in zip(tasks, results, strict=True)
        ]
        try:
            try:
                await asyncio.gather(*pending)
            except BaseException:
                for item in pending:
                    item.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise
            self._write_state(run, phase.name, base, results)
            merge = await self.merge(run, results)
            self._write_state(run, phase.name, base, results)
        finally:
            self._cleanup(results)
        return ParallelOutcome(results=results, merge=merge)

    async def _reconcile(self, run: Run, item: BranchResult, conflicted: list[str]) -> bool:
        comb = self.config.parallel.comb_agent
        definition = self.assembler.agent_for(comb)
        prompt = "\n".join(
            [
                f"# Objective\n{run.objective}",
                f"Merging branch `{item.branch}` (task {item.task_id}) into the main line "
                "stopped on conflicts.",
                f"Branch intent: {item.summary or item.task_id}",
                "Conflicted files:",
                *(f"- {path}" for path in conflicted),
                "Edit each file so both sides' intent is preserved and no conflict "
                "markers remain. Re-implement the change if it cannot be merged mechanically.",
            ]
        )
        try:
            await self.invoker.invoke(
                agent=comb,
                system_prompt=definition.system_prompt,
                prompt=prompt,
                artifact_path=self.run_dir / "output" / f"comb-{item.task_id}.md",
                working_directory=self.repo_root,
            )
        except InvocationError as exc:
            logger.warning("comb agent failed on %s: %s", item.branch, exc)
            return False
        for relative in conflicted:
            path = self.repo_root / relative
            if not path.is_file():
                continue
            content = path.read_text(encoding="utf-8", errors="replace")
            if any(marker in content for marker in CONFLICT_MARKERS):
                return False
        return True

    async def merge(self, run: Run, results: list[BranchResult]) -> MergeOutcome:
        """Single merge phase on the main line; emits exactly one `parallel_merge` event."""
        outcome = MergeOutcome()
        for item in merge_order([entry for entry in results if entry.status == "pending_merge"]):
            conflicted = self.git.merge(item.branch, f"hive: merge {item.task_id}")
            if not conflicted:
                item.status = "merged"
                outcome.merged.append(item.task_id)
                continue
            self.events.emit(
                "merge_conflict",
                actor=self.config.parallel.comb_agent,
                task_id=item.task_id,
                branch=item.branch,
                files=conflicted,
            )
            if await self._reconcile(run, item, conflicted):
                self.git.commit_merge(f"hive: merge {item.task_id} (reconciled)")
                item.status = "merged"
                outcome.merged.append(item.task_id)
                outcome.resolved.append(item.task_id)
                continue
            self.git.abort_merge()
            item.status = "conflict"
            outcome.unresolved.append(
                {"task_id": item.task_id, "branch": item.branch, "files": conflicted}
            )
        self.events.emit(
            "parallel_merge",
            actor=self.config.parallel.comb_agent,
            merged=outcome.merged,
            resolved=outcome.resolved,
            unresolved=outcome.unresolved,
            failed=[item.task_id for item in results if item.status == "failed"],
        )
        return outcome

    async def comb(self, run: Run) -> MergeOutcome:
        """Re-run the merge phase for branches recorded in `parallel.json`."""
        payload = read_json(self.state_file)
        if not isinstance(payload, dict) or payload.get("run_id") != run.run_id:
            raise HiveStateError(f"No parallel branches recorded for run {run.run_id}.")
        results = [BranchResult.from_dict(item) for item in payload.get("branches", [])]
        for item in results:
            if item.status == "conflict":
                item.status = "pending_merge"
        merge = await self.merge(run, results)
        for item in results:
            if item.status == "merged":
                self.git.delete_branch(item.branch)
        self._write_state(
            run,
            str(payload.get("phase") or ""),
            str(payload.get("base") or ""),
            results,
        )
        return merge
