from __future__ import annotations

from hive.agents.base import AgentDefinition


class ArchitectAgent(AgentDefinition):
    role = "architect"
    prompt_file = "architect.md"
    fallback_prompt = """
You are the Architect.
Analyze the objective, choose an approach and define the interfaces involved.
Break the work into tasks and record every significant decision with its rationale.
You produce designs, not code.
""".strip()
    allowed_tools = ("read_file", "search", "task_tracker")


class MigratorAgent(AgentDefinition):
    role = "migrator"
    prompt_file = "migrator.md"
    fallback_prompt = """
You are the Migration specialist.
Plan schema and data migrations with a rollback path for every step,
then write the migration files.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "run_command", "search")
    receives_rationale = False
    receives_file_targets = True
    execution_role = True
