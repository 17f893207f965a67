from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
    "task_tracker",
}


class AgentDefinition:
    """Static description of one agent role: prompt, tools and context needs."""

    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software specialist."
    allowed_tools: tuple[str, ...] = ("read_file", "search")
    # Design-consuming roles see decision rationale; execution roles see file targets.
    receives_rationale: bool = True
    receives_file_targets: bool = False
    receives_diagnostics: bool = False
    execution_role: bool = False
    runs_tests: bool = False

    def __init__(self, role: str | None = None, *, search_paths: list[Path] | None = None) -> None:
        if role:
            self.role = role
        self.search_paths = list(search_paths or [])
        self._system_prompt: str | None = None

    @property
    def system_prompt(self) -> str:
        if self._system_prompt is None:
            self._system_prompt = self._load_system_prompt()
        return self._system_prompt

    def _load_system_prompt(self) -> str:
        filename = self.prompt_file or f"{self.role}.md"
        for directory in self.search_paths:
            candidate = directory / filename
            if candidate.is_file():
                logger.debug("loaded %s prompt from %s", self.role, candidate)
                return candidate.read_text(encoding="utf-8").strip()
        return self.fallback_prompt.strip()

    def tools(self) -> list[str]:
        normalized = sorted({str(tool).strip() for tool in self.allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise RuntimeError(
                f"Tool policy rejected unknown tools for agent '{self.role}': "
                + ", ".join(unknown)
            )
        return normalized

    def can(self, tool: str) -> bool:
        return tool in self.allowed_tools


class GenericAgent(AgentDefinition):
    fallback_prompt = """
You are a software specialist working inside a multi-phase delivery workflow.
Complete the phase task you are given and report honestly on the result.
""".strip()
    allowed_tools = ("read_file", "search", "run_command")
    receives_file_targets = True
