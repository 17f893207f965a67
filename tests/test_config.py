import tomllib
from pathlib import Path

from hive import __version__
from hive.config import HiveConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    config = HiveConfig.default()
    config.project.name = "hive-test"
    config.project.build_command = "npm run build"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.agents.overrides = {"architect": {"cli": "claude", "model": "opus"}}
    config.workflow.max_challenge_rounds = 2
    config.workflow.autonomous = True
    config.evaluation.independent_passes = ["completeness", "risk"]
    config.parallel.max_parallel = 5
    config.parallel.shared_labels = ["infra"]
    config.tracker.enabled = False

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "hive-test"
    assert loaded.project.build_command == "npm run build"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.agents.overrides == {"architect": {"cli": "claude", "model": "opus"}}
    assert loaded.workflow.max_challenge_rounds == 2
    assert loaded.workflow.autonomous is True
    assert loaded.evaluation.independent_passes == ["completeness", "risk"]
    assert loaded.parallel.max_parallel == 5
    assert loaded.parallel.shared_labels == ["infra"]
    assert loaded.tracker.enabled is False
    assert loaded.cost.chars_per_token == 4


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.workflow.default_workflow == "feature"
    assert config.workflow.max_challenge_rounds == 1
    assert config.parallel.max_parallel == 3


def test_agent_overrides_resolve_per_role() -> None:
    config = HiveConfig.default()
    config.agents.overrides = {"architect": {"model": "opus"}, "tester": {"cli": "codex"}}

    assert config.agents.resolve("architect") == ("claude", "opus")
    assert config.agents.resolve("tester") == ("codex", "sonnet")
    assert config.agents.resolve("implementer") == ("claude", "sonnet")


def test_toml_dump_contains_sections_and_tables() -> None:
    config = HiveConfig.default()
    config.agents.overrides = {"ui-designer": {"model": "opus"}}
    rendered = dumps_toml(config)

    for section in ("[project]", "[backend]", "[workflow]", "[evaluation]", "[parallel]"):
        assert section in rendered
    assert "[agents.overrides.ui-designer]" in rendered
    assert "max_challenge_rounds" in rendered
    assert "clear_pass_threshold = 0.7" in rendered
    assert tomllib.loads(rendered)["agents"]["overrides"]["ui-designer"]["model"] == "opus"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
