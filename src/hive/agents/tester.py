from __future__ import annotations

from hive.agents.base import AgentDefinition


class TesterAgent(AgentDefinition):
    role = "tester"
    prompt_file = "tester.md"
    fallback_prompt = """
You are the Tester.
Write and run tests for the happy path, edge cases and failures of the change.
Report clear pass/fail outcomes and file bugs for failures.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "run_command", "search")
    receives_rationale = False
    receives_file_targets = True
    runs_tests = True


class E2ETesterAgent(TesterAgent):
    role = "e2e-tester"
    prompt_file = "e2e-tester.md"
    fallback_prompt = """
You are the end-to-end tester.
Write and run end-to-end tests for the critical user flows touched by the change.
""".strip()
