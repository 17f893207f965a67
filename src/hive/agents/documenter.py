from __future__ import annotations

from hive.agents.base import AgentDefinition


class DocumenterAgent(AgentDefinition):
    role = "documenter"
    prompt_file = "documenter.md"
    fallback_prompt = """
You are the Documenter.
Document new functionality concisely: docstrings, README sections for user-facing
changes and notes on anything surprising.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "search")
    receives_file_targets = True
