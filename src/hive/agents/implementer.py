from __future__ import annotations

from hive.agents.base import AgentDefinition


class ImplementerAgent(AgentDefinition):
    role = "implementer"
    prompt_file = "implementer.md"
    fallback_prompt = """
You are the Implementer.
Implement exactly what the design calls for, matching repository conventions.
Touch the planned files, leave no debug statements behind and keep the build green.
""".strip()
    allowed_tools = (
        "read_file",
        "write_file",
        "edit_file",
        "run_command",
        "search",
        "task_tracker",
    )
    receives_rationale = False
    receives_file_targets = True
    execution_role = True


class UIDesignerAgent(ImplementerAgent):
    role = "ui-designer"
    prompt_file = "ui-designer.md"
    fallback_prompt = """
You are the UI designer.
Review and improve interface quality: design-system consistency, spacing,
typography, responsive layout and loading, empty and error states.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "search")
