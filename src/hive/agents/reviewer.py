from __future__ import annotations

from hive.agents.base import AgentDefinition


class ReviewerAgent(AgentDefinition):
    role = "reviewer"
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the Reviewer.
Review every change for correctness, maintainability and security.
Classify findings as BLOCKING, IMPORTANT or NITPICK.
""".strip()
    allowed_tools = ("read_file", "search", "run_command", "task_tracker")
    receives_file_targets = True


class SecurityAgent(ReviewerAgent):
    role = "security"
    prompt_file = "security.md"
    fallback_prompt = """
You are the Security reviewer.
Audit the change for injection, authentication, authorization and secret-handling flaws.
Report each issue with a severity of low, medium, high or critical.
""".strip()
    allowed_tools = ("read_file", "search", "run_command")
