from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["claude", "codex"]

DEFAULT_CONFIG_FILE = "hive.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    build_command: str = ""
    typecheck_command: str = ""
    test_command: str = ""
    command_timeout_seconds: float = 600.0


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "claude"
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0
    claude_binary: str = "claude"
    codex_binary: str = "codex"


@dataclass(slots=True)
class AgentsConfig:
    default_cli: BackendName = "claude"
    default_model: str = "sonnet"
    overrides: dict[str, dict[str, str]] = field(default_factory=dict)

    def resolve(self, agent: str) -> tuple[str, str]:
        override = self.overrides.get(agent, {})
        cli = str(override.get("cli") or self.default_cli)
        model = str(override.get("model") or self.default_model)
        return cli, model


@dataclass(slots=True)
class WorkflowConfig:
    default_workflow: str = "feature"
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.0
    max_challenge_rounds: int = 1
    autonomous: bool = False
    confidence_checkpoint: bool = True
    recovery_agent: str = "debugger"
    adapt_enabled: bool = True
    adapt_files_threshold: int = 10


@dataclass(slots=True)
class EvaluationConfig:
    clear_pass_threshold: float = 0.7
    needs_review_threshold: float = 0.4
    self_weight: float = 0.5
    checks_weight: float = 0.3
    evaluation_weight: float = 0.2
    independent_passes: list[str] = field(default_factory=list)
    evaluation_model: str = "haiku"
    debug_markers: list[str] = field(
        default_factory=lambda: [
            "console.log(",
            "debugger;",
            "pdb.set_trace(",
            "breakpoint()",
            "dbg!(",
        ]
    )


@dataclass(slots=True)
class ParallelConfig:
    enabled: bool = True
    max_parallel: int = 3
    worktree_dir: str = ".hive/worktrees"
    branch_prefix: str = "hive"
    comb_agent: str = "comb"
    shared_labels: list[str] = field(
        default_factory=lambda: ["infra", "shared", "config", "setup", "schema", "deps"]
    )


@dataclass(slots=True)
class TrackerConfig:
    enabled: bool = True
    binary: str = "bd"


@dataclass(slots=True)
class CostConfig:
    chars_per_token: int = 4
    input_per_million: float = 3.0
    output_per_million: float = 15.0


@dataclass(slots=True)
class HiveConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    cost: CostConfig = field(default_factory=CostConfig)

    @classmethod
    def default(cls) -> HiveConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> HiveConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            evaluation=EvaluationConfig(**data.get("evaluation", {})),
            parallel=ParallelConfig(**data.get("parallel", {})),
            tracker=TrackerConfig(**data.get("tracker", {})),
            cost=CostConfig(**data.get("cost", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "build_command": self.project.build_command,
                "typecheck_command": self.project.typecheck_command,
                "test_command": self.project.test_command,
                "command_timeout_seconds": self.project.command_timeout_seconds,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "claude_binary": self.backend.claude_binary,
                "codex_binary": self.backend.codex_binary,
            },
            "agents": {
                "default_cli": self.agents.default_cli,
                "default_model": self.agents.default_model,
                "overrides": {
                    agent: dict(values) for agent, values in sorted(self.agents.overrides.items())
                },
            },
            "workflow": {
                "default_workflow": self.workflow.default_workflow,
                "max_attempts": self.workflow.max_attempts,
                "retry_backoff_seconds": self.workflow.retry_backoff_seconds,
                "max_challenge_rounds": self.workflow.max_challenge_rounds,
                "autonomous": self.workflow.autonomous,
                "confidence_checkpoint": self.workflow.confidence_checkpoint,
                "recovery_agent": self.workflow.recovery_agent,
                "adapt_enabled": self.workflow.adapt_enabled,
                "adapt_files_threshold": self.workflow.adapt_files_threshold,
            },
            "evaluation": {
                "clear_pass_threshold": self.evaluation.clear_pass_threshold,
                "needs_review_threshold": self.evaluation.needs_review_threshold,
                "self_weight": self.evaluation.self_weight,
                "checks_weight": self.evaluation.checks_weight,
                "evaluation_weight": self.evaluation.evaluation_weight,
                "independent_passes": list(self.evaluation.independent_passes),
                "evaluation_model": self.evaluation.evaluation_model,
                "debug_markers": list(self.evaluation.debug_markers),
            },
            "parallel": {
                "enabled": self.parallel.enabled,
                "max_parallel": self.parallel.max_parallel,
                "worktree_dir": self.parallel.worktree_dir,
                "branch_prefix": self.parallel.branch_prefix,
                "comb_agent": self.parallel.comb_agent,
                "shared_labels": list(self.parallel.shared_labels),
            },
            "tracker": {
                "enabled": self.tracker.enabled,
                "binary": self.tracker.binary,
            },
            "cost": {
                "chars_per_token": self.cost.chars_per_token,
                "input_per_million": self.cost.input_per_million,
                "output_per_million": self.cost.output_per_million,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key.replace("_", "").replace("-", "").isalnum():
        return key
    return json.dumps(key, ensure_ascii=False)


def _dump_table(name: str, values: dict[str, Any], lines: list[str]) -> None:
    lines.append(f"[{name}]")
    nested: list[tuple[str, dict[str, Any]]] = []
    for key, value in values.items():
        if isinstance(value, dict):
            nested.append((key, value))
            continue
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    lines.append("")
    for key, value in nested:
        for child, child_values in value.items():
            _dump_table(f"{name}.{_toml_key(key)}.{_toml_key(child)}", child_values, lines)


def dumps_toml(config: HiveConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "backend",
        "agents",
        "workflow",
        "evaluation",
        "parallel",
        "tracker",
        "cost",
    ]
    for section in section_order:
        _dump_table(section, data[section], lines)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> HiveConfig:
    if not path.exists():
        return HiveConfig.default()
    return HiveConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: HiveConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
