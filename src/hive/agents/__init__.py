from __future__ import annotations

from pathlib import Path

from hive.agents.architect import ArchitectAgent, MigratorAgent
from hive.agents.base import TOOL_POLICY_ALLOWLIST, AgentDefinition, GenericAgent
from hive.agents.debugger import CombAgent, DebuggerAgent
from hive.agents.documenter import DocumenterAgent
from hive.agents.implementer import ImplementerAgent, UIDesignerAgent
from hive.agents.reviewer import ReviewerAgent, SecurityAgent
from hive.agents.tester import E2ETesterAgent, TesterAgent

AGENT_TYPES: dict[str, type[AgentDefinition]] = {
    agent_type.role: agent_type
    for agent_type in (
        ArchitectAgent,
        MigratorAgent,
        ImplementerAgent,
        UIDesignerAgent,
        DebuggerAgent,
        CombAgent,
        TesterAgent,
        E2ETesterAgent,
        ReviewerAgent,
        SecurityAgent,
        DocumenterAgent,
    )
}


def get_agent(role: str, *, search_paths: list[Path] | None = None) -> AgentDefinition:
    agent_type = AGENT_TYPES.get(role)
    if agent_type is None:
        return GenericAgent(role, search_paths=search_paths)
    return agent_type(search_paths=search_paths)


def prompt_search_paths(repo_root: Path) -> list[Path]:
    return [repo_root / ".hive" / "agents", Path.home() / ".hive" / "agents"]


__all__ = [
    "AGENT_TYPES",
    "TOOL_POLICY_ALLOWLIST",
    "AgentDefinition",
    "ArchitectAgent",
    "CombAgent",
    "DebuggerAgent",
    "DocumenterAgent",
    "E2ETesterAgent",
    "GenericAgent",
    "ImplementerAgent",
    "MigratorAgent",
    "ReviewerAgent",
    "SecurityAgent",
    "TesterAgent",
    "UIDesignerAgent",
    "get_agent",
    "prompt_search_paths",
]
