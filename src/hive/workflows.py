from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from hive.checks import has_frontend, has_tests
from hive.errors import WorkflowError
from hive.models import Phase

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Workflow:
    name: str
    description: str
    phases: tuple[Phase, ...]
    source: str = "builtin"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "phases": [phase.to_dict() for phase in self.phases],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, source: str = "builtin") -> Workflow:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise WorkflowError("Workflow definition has no name.")
        raw_phases = payload.get("phases")
        if not isinstance(raw_phases, list) or not raw_phases:
            raise WorkflowError(f"Workflow '{name}' defines no phases.")
        try:
            phases = tuple(Phase.from_dict(item) for item in raw_phases)
        except (KeyError, TypeError, ValueError) as exc:
            raise WorkflowError(f"Workflow '{name}' is invalid: {exc}") from exc
        names = [phase.name for phase in phases]
        duplicates = sorted({item for item in names if names.count(item) > 1})
        if duplicates:
            raise WorkflowError(f"Workflow '{name}' repeats phase names: {', '.join(duplicates)}")
        return cls(
            name=name,
            description=str(payload.get("description") or ""),
            phases=phases,
            source=source,
        )


BUILD_CHECK = {"name": "build_check", "type": "build_verify", "on_failure": "debugger"}

BUILTIN_WORKFLOWS: dict[str, dict[str, Any]] = {
    "feature": {
        "description": "Full pipeline: design, implement, test, review, document",
        "phases": [
            {
                "name": "design",
                "agent": "architect",
                "checkpoint_after": True,
                "task": "Design the solution. Break the work into tasks in the task tracker.",
            },
            {
                "name": "implementation",
                "agent": "implementer",
                "needs_handoff_from": "architect",
                "task": "Implement the designed solution, highest priority task first.",
            },
            BUILD_CHECK,
            {
                "name": "ui_review",
                "agent": "ui-designer",
                "required": False,
                "condition": "has_frontend",
                "needs_handoff_from": "implementer",
                "task": "Review and improve UI consistency, spacing and empty/error states.",
            },
            {
                "name": "testing",
                "agent": "tester",
                "needs_handoff_from": "implementer",
                "task": "Write and run tests for the implementation. Report failures.",
            },
            {
                "name": "e2e_testing",
                "agent": "e2e-tester",
                "required": False,
                "condition": "has_frontend",
                "needs_handoff_from": "tester",
                "task": "Write and run end-to-end tests for the critical user flows.",
            },
            {
                "name": "review",
                "agent": "reviewer",
                "required": False,
                "task": "Review all changes. File BLOCKING, IMPORTANT and NITPICK issues.",
            },
            {
                "name": "documentation",
                "agent": "documenter",
                "required": False,
                "needs_handoff_from": "implementer",
                "task": "Document the new functionality where users or maintainers need it.",
            },
            {"name": "fix_blockers", "type": "fix_blocking", "required": False},
        ],
    },
    "bugfix": {
        "description": "Bug fix: debugger, build check, regression tests",
        "phases": [
            {
                "name": "debug",
                "agent": "debugger",
                "task": "Reproduce the problem, find the root cause and fix it.",
            },
            BUILD_CHECK,
            {
                "name": "testing",
                "agent": "tester",
                "needs_handoff_from": "debugger",
                "task": "Add a regression test for the bug and run the full suite.",
            },
        ],
    },
    "refactor": {
        "description": "Refactoring: plan, implement, test, review",
        "phases": [
            {
                "name": "design",
                "agent": "architect",
                "checkpoint_after": True,
                "task": "Plan the refactoring in small, behaviour-preserving steps.",
            },
            {
                "name": "implementation",
                "agent": "implementer",
                "needs_handoff_from": "architect",
                "task": "Execute the refactoring plan incrementally, keeping tests green.",
            },
            BUILD_CHECK,
            {
                "name": "testing",
                "agent": "tester",
                "task": "Run the existing tests and cover any new interfaces.",
            },
            {
                "name": "review",
                "agent": "reviewer",
                "required": False,
                "task": "Review the refactoring for API compatibility and coverage gaps.",
            },
        ],
    },
    "test": {
        "description": "Testing only",
        "phases": [
            {
                "name": "testing",
                "agent": "tester",
                "task": "Find untested paths, write tests and report the results.",
            }
        ],
    },
    "review": {
        "description": "Code review only",
        "phases": [
            {
                "name": "review",
                "agent": "reviewer",
                "task": "Review recent changes. File BLOCKING, IMPORTANT and NITPICK issues.",
            }
        ],
    },
    "quick": {
        "description": "Minimal: implement, build check",
        "phases": [
            {
                "name": "implementation",
                "agent": "implementer",
                "task": "Implement the requested change and verify it works.",
            },
            BUILD_CHECK,
        ],
    },
    "docs": {
        "description": "Documentation, then review",
        "phases": [
            {
                "name": "documentation",
                "agent": "documenter",
                "task": "Create or update the documentation the codebase is missing.",
            },
            {
                "name": "review",
                "agent": "reviewer",
                "required": False,
                "task": "Review the documentation for accuracy and clarity.",
            },
        ],
    },
    "migration": {
        "description": "Schema migration: plan, build check, test, review",
        "phases": [
            {
                "name": "plan_migration",
                "agent": "migrator",
                "checkpoint_after": True,
                "task": "Plan the migration, generate migration files and a rollback script.",
            },
            BUILD_CHECK,
            {
                "name": "testing",
                "agent": "tester",
                "required": False,
                "task": "Verify the migration and its rollback apply cleanly.",
            },
            {
                "name": "review",
                "agent": "reviewer",
                "required": False,
                "task": "Review the migration for data safety and rollback viability.",
            },
        ],
    },
}

CONDITIONS = {
    "has_frontend": has_frontend,
    "has_tests": has_tests,
}


def workflow_search_paths(repo_root: Path) -> list[Path]:
    return [repo_root / ".hive" / "workflows", Path.home() / ".hive" / "workflows"]


def load_workflow(name: str, repo_root: Path) -> Workflow:
    """Resolve a workflow: repository overrides, then user-level, then built-ins."""
    for directory in workflow_search_paths(repo_root):
        path = directory / f"{name}.json"
        if not path.is_file():
            continue
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise WorkflowError(f"Workflow file {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise WorkflowError(f"Workflow file {path} must contain a JSON object.")
        payload.setdefault("name", name)
        logger.debug("loaded workflow %s from %s", name, path)
        return Workflow.from_dict(payload, source=str(path))
    lookup = "feature" if name == "default" else name
    if lookup not in BUILTIN_WORKFLOWS:
        raise WorkflowError(
            f"Unknown workflow '{name}'. Built-in workflows: {', '.join(sorted(BUILTIN_WORKFLOWS))}"
        )
    return Workflow.from_dict({"name": lookup, **BUILTIN_WORKFLOWS[lookup]})


def single_agent_workflow(agent: str) -> Workflow:
    return Workflow(
        name=f"only-{agent}",
        description=f"Single phase run by {agent}",
        phases=(Phase(name=agent, agent=agent),),
        source="only",
    )


def list_workflows(repo_root: Path) -> list[Workflow]:
    found: dict[str, Workflow] = {}
    for name in BUILTIN_WORKFLOWS:
        found[name] = load_workflow(name, repo_root)
    for directory in reversed(workflow_search_paths(repo_root)):
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob("*.json")):
            found[path.stem] = load_workflow(path.stem, repo_root)
    return [found[name] for name in sorted(found)]


def condition_holds(condition: str | None, repo_root: Path) -> bool:
    if not condition:
        return True
    check = CONDITIONS.get(condition)
    if check is None:
        raise WorkflowError(f"Unknown phase condition '{condition}'.")
    return check(repo_root)
