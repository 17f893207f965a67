from __future__ import annotations

from hive.agents.base import AgentDefinition


class DebuggerAgent(AgentDefinition):
    role = "debugger"
    prompt_file = "debugger.md"
    fallback_prompt = """
You are the Debugger.
Reproduce the failure from the diagnostics you are given, find the root cause
and apply the smallest fix that makes the build and tests pass again.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "run_command", "search")
    receives_rationale = False
    receives_file_targets = True
    receives_diagnostics = True
    execution_role = True


class CombAgent(AgentDefinition):
    """Merges parallel branches, reconciling the intent of both sides of a conflict."""

    role = "comb"
    prompt_file = "comb.md"
    fallback_prompt = """
You are the merge specialist.
Integrate the listed branches into the main line. When a conflict cannot be
merged mechanically, re-implement the change so both branches' intent is kept.
Never leave conflict markers behind.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "run_command", "search")
    receives_rationale = False
    receives_file_targets = True
    receives_diagnostics = True
    execution_role = True
