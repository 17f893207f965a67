from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.agents import AgentDefinition, get_agent, prompt_search_paths
from hive.config import HiveConfig
from hive.handoff import latest_handoff
from hive.models import Challenge, Phase, Run

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILE_CHARS = 20_000

REPORT_PROTOCOL = """
When you are done, end your reply with exactly one report block:

<!--HIVE_REPORT
{
  "status": "complete | partial | blocked | challenge | needs_input",
  "confidence": 0.0,
  "summary": "one paragraph",
  "files_modified": [],
  "decisions": [{"decision": "...", "rationale": "..."}],
  "blockers": [],
  "next_agent_hint": ""
}
HIVE_REPORT-->

Use "challenge" with "challenged_agent", "issue", "evidence", "suggestion" and
"severity" when an earlier phase's output is wrong. Use "needs_input" with
"question", "default" and "can_proceed_with_default" when a human must decide.
A fenced ```hive_report block with the same JSON is accepted as well.
""".strip()


def render_challenge_directive(challenge: Challenge) -> str:
    lines = [
        f"The {challenge.challenger} phase challenged your previous output "
        f"(severity: {challenge.severity}). Address it before anything else.",
        f"Issue: {challenge.issue}",
    ]
    if challenge.evidence:
        lines.append(f"Evidence: {challenge.evidence}")
    if challenge.suggestion:
        lines.append(f"Suggested resolution: {challenge.suggestion}")
    lines.append(
        "Either revise your output to resolve the issue, or explain in your report "
        "summary why the original output stands."
    )
    return "\n".join(lines)


@dataclass(slots=True)
class ContextBundle:
    run_id: str
    phase: str
    agent: str
    objective: str
    task: str = ""
    decisions: list[dict[str, str]] = field(default_factory=list)
    handoff: dict[str, Any] | None = None
    file_targets: list[str] = field(default_factory=list)
    challenge_directive: str | None = None
    adjustment: str | None = None
    diagnostics: list[str] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    commands: dict[str, str] = field(default_factory=dict)
    context_files: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "phase": self.phase,
            "agent": self.agent,
            "objective": self.objective,
            "task": self.task,
            "decisions": [dict(item) for item in self.decisions],
            "handoff": dict(self.handoff) if self.handoff else None,
            "file_targets": list(self.file_targets),
            "challenge_directive": self.challenge_directive,
            "adjustment": self.adjustment,
            "diagnostics": list(self.diagnostics),
            "allowed_tools": list(self.allowed_tools),
            "commands": dict(self.commands),
            "context_files": [item["path"] for item in self.context_files],
        }

    def digest(self) -> str:
        serialized = json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]

    def render(self) -> str:
        sections = [f"# Objective\n{self.objective}", f"# Phase: {self.phase} ({self.agent})"]
        if self.task:
            sections.append(self.task)
        if self.challenge_directive:
            sections.append(f"## Challenge to resolve\n{self.challenge_directive}")
        if self.adjustment:
            sections.append(f"## Adjustment from the human reviewer\n{self.adjustment}")
        if self.diagnostics:
            sections.append(
                "## Diagnostics\n" + "\n".join(f"- {item}" for item in self.diagnostics)
            )
        if self.decisions:
            lines = []
            for item in self.decisions:
                lines.append(f"- {item['decision']}")
                if item.get("rationale"):
                    lines.append(f"  rationale: {item['rationale']}")
            sections.append("## Decisions so far\n" + "\n".join(lines))
        if self.handoff:
            lines = [f"From: {self.handoff['from_phase']} ({self.handoff['status']})"]
            if self.handoff.get("summary"):
                lines.append(self.handoff["summary"])
            for item in self.handoff.get("decisions", []):
                text = item["decision"]
                if item.get("rationale"):
                    text += f" (because {item['rationale']})"
                lines.append(f"- decision: {text}")
            for task_id in self.handoff.get("tasks_created", []):
                lines.append(f"- task created: {task_id}")
            for note in self.handoff.get("notes", []):
                lines.append(f"- note: {note}")
            sections.append("## Handoff\n" + "\n".join(lines))
        if self.file_targets:
            sections.append(
                "## File targets\n" + "\n".join(f"- {path}" for path in self.file_targets)
            )
        for item in self.context_files:
            sections.append(f"## Context file: {item['path']}\n```\n{item['content']}\n```")
        if self.allowed_tools:
            sections.append("## Tools you may use\n" + ", ".join(self.allowed_tools))
        if self.commands:
            sections.append(
                "## Commands\n"
                + "\n".join(f"- {name}: `{command}`" for name, command in self.commands.items())
            )
        sections.append(f"## Report\n{REPORT_PROTOCOL}")
        return "\n\n".join(sections) + "\n"


class ContextAssembler:
    """Builds the role-filtered input for one phase from the run document alone."""

    def __init__(self, config: HiveConfig, repo_root: Path) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()

    def agent_for(self, role: str) -> AgentDefinition:
        return get_agent(role, search_paths=prompt_search_paths(self.repo_root))

    def _read_context_file(self, relative: str) -> dict[str, str]:
        path = Path(relative)
        if not path.is_absolute():
            path = self.repo_root / path
        try:
            content = path.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError) as exc:
            logger.warning("context file %s unreadable: %s", relative, exc)
            content = f"<unreadable: {exc.__class__.__name__}>"
        if len(content) > MAX_CONTEXT_FILE_CHARS:
            content = content[:MAX_CONTEXT_FILE_CHARS] + "\n<truncated>"
        return {"path": relative, "content": content}

    @staticmethod
    def _filter_handoff(handoff: dict[str, Any], agent: AgentDefinition) -> dict[str, Any]:
        filtered: dict[str, Any] = {
            "handoff_id": handoff.get("handoff_id"),
            "from_phase": handoff.get("from_phase"),
            "status": handoff.get("status"),
            "summary": handoff.get("summary", ""),
            "notes": list(handoff.get("notes", [])),
        }
        decisions = handoff.get("decisions", [])
        if agent.receives_rationale:
            filtered["decisions"] = [dict(item) for item in decisions]
        else:
            filtered["decisions"] = [{"decision": item["decision"]} for item in decisions]
        if agent.receives_file_targets:
            filtered["files"] = list(handoff.get("files", []))
        if agent.can("task_tracker"):
            filtered["tasks_created"] = list(handoff.get("tasks_created", []))
        return filtered

    @staticmethod
    def _file_targets(run: Run, handoff: dict[str, Any] | None) -> list[str]:
        ordered: list[str] = []
        sources = [handoff] if handoff else []
        sources.extend(reversed(run.handoffs))
        for item in sources:
            for path in item.get("files", []):
                if path not in ordered:
                    ordered.append(path)
        return ordered

    def _commands(self, agent: AgentDefinition) -> dict[str, str]:
        if not agent.can("run_command"):
            return {}
        project = self.config.project
        commands: dict[str, str] = {}
        if agent.execution_role:
            if project.build_command:
                commands["build"] = project.build_command
            if project.typecheck_command:
                commands["typecheck"] = project.typecheck_command
        if (agent.runs_tests or agent.execution_role) and project.test_command:
            commands["test"] = project.test_command
        return commands

    def assemble(
        self,
        run: Run,
        phase: Phase,
        *,
        agent: str | None = None,
        challenge: Challenge | None = None,
        adjustment: str | None = None,
        diagnostics: list[str] | None = None,
        task: str | None = None,
    ) -> ContextBundle:
        role = agent or phase.agent or "implementer"
        definition = self.agent_for(role)
        source = latest_handoff(run, phase.needs_handoff_from) if phase.needs_handoff_from else None
        if source is None:
            source = latest_handoff(run)

        decisions = []
        for item in run.decisions:
            entry = {"decision": str(item.get("decision", ""))}
            if definition.receives_rationale and item.get("rationale"):
                entry["rationale"] = str(item["rationale"])
            decisions.append(entry)

        return ContextBundle(
            run_id=run.run_id,
            phase=phase.name,
            agent=role,
            objective=run.objective,
            task=task if task is not None else phase.task,
            decisions=decisions,
            handoff=self._filter_handoff(source, definition) if source else None,
            file_targets=(
                self._file_targets(run, source) if definition.receives_file_targets else []
            ),
            challenge_directive=render_challenge_directive(challenge) if challenge else None,
            adjustment=adjustment,
            diagnostics=list(diagnostics or []),
            allowed_tools=definition.tools(),
            commands=self._commands(definition),
            context_files=[self._read_context_file(item) for item in run.context_files],
        )
