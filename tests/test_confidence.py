import asyncio
import json
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from hive.agents import get_agent
from hive.backends.base import AgentBackend
from hive.confidence import (
    CLEAR_PASS,
    FAIL,
    NEEDS_REVIEW,
    CheckResult,
    ConfidenceEvaluator,
    ConfidenceSignals,
)
from hive.config import HiveConfig
from hive.invoker import AgentInvoker
from hive.report import HiveReport, parse_report

PASSING = f'"{sys.executable}" -c "print(\'ok\')"'
FAILING = f'"{sys.executable}" -c "raise SystemExit(2)"'


class ScoringBackend(AgentBackend):
    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.prompts.append(user_prompt)
        score = "0.4" if "risky" in user_prompt else "0.8"
        yield f'{{"score": {score}, "reason": "checked"}}'


def _report(confidence: float, **payload: Any) -> HiveReport:
    body = json.dumps({"status": "complete", "confidence": confidence, **payload})
    return parse_report(f"<!--HIVE_REPORT\n{body}\nHIVE_REPORT-->")


def test_score_uses_self_report_alone_without_other_signals(tmp_path: Path) -> None:
    evaluator = ConfidenceEvaluator(HiveConfig.default(), tmp_path)

    score = evaluator.score(ConfidenceSignals(self_reported=0.9))

    assert score.score == 0.9
    assert score.category == CLEAR_PASS


def test_score_weights_checks_and_evaluations(tmp_path: Path) -> None:
    evaluator = ConfidenceEvaluator(HiveConfig.default(), tmp_path)
    signals = ConfidenceSignals(
        self_reported=0.8,
        checks=[
            CheckResult("planned_files_touched", True),
            CheckResult("debug_markers_absent", False),
            CheckResult("not_run", None),
        ],
        evaluations={"completeness": 0.6},
    )

    score = evaluator.score(signals)

    assert score.score == 0.67
    assert score.category == NEEDS_REVIEW
    assert score.components == {"self": 0.8, "checks": 0.5, "evaluations": 0.6}


def test_score_is_deterministic(tmp_path: Path) -> None:
    evaluator = ConfidenceEvaluator(HiveConfig.default(), tmp_path)
    signals = ConfidenceSignals(self_reported=0.55, critique_adjustment=0.1)

    assert evaluator.score(signals) == evaluator.score(signals)
    assert evaluator.score(signals).score == 0.65


def test_hard_check_failure_forces_fail(tmp_path: Path) -> None:
    evaluator = ConfidenceEvaluator(HiveConfig.default(), tmp_path)
    signals = ConfidenceSignals(
        self_reported=1.0,
        checks=[CheckResult("build", True), CheckResult("tests", False)],
    )

    score = evaluator.score(signals)

    assert score.category == FAIL
    assert score.components["hard_failures"] == ["tests"]


def test_low_score_is_fail(tmp_path: Path) -> None:
    evaluator = ConfidenceEvaluator(HiveConfig.default(), tmp_path)

    assert evaluator.score(ConfidenceSignals(self_reported=0.2)).category == FAIL


def test_execution_role_runs_build_and_debug_marker_checks(tmp_path: Path) -> None:
    config = HiveConfig.default()
    config.project.build_command = PASSING
    config.project.typecheck_command = FAILING
    (tmp_path / "app.py").write_text("breakpoint()\n", encoding="utf-8")
    evaluator = ConfidenceEvaluator(config, tmp_path)

    checks = evaluator.automated_checks(
        get_agent("implementer"),
        _report(0.9, files_modified=["app.py"]),
        planned_files=["app.py", "other.py"],
    )

    by_name = {item.name: item for item in checks}
    assert by_name["build"].passed is True
    assert by_name["typecheck"].passed is False
    assert by_name["planned_files_touched"].passed is True
    assert by_name["debug_markers_absent"].passed is False
    assert "breakpoint()" in by_name["debug_markers_absent"].detail


def test_design_role_runs_no_commands(tmp_path: Path) -> None:
    config = HiveConfig.default()
    config.project.build_command = FAILING
    config.project.test_command = FAILING
    evaluator = ConfidenceEvaluator(config, tmp_path)

    assert evaluator.automated_checks(get_agent("architect"), _report(0.9)) == []


def test_tester_role_runs_test_command(tmp_path: Path) -> None:
    config = HiveConfig.default()
    config.project.test_command = FAILING
    evaluator = ConfidenceEvaluator(config, tmp_path)

    checks = evaluator.automated_checks(get_agent("tester"), _report(0.9))

    assert [(item.name, item.passed) for item in checks] == [("tests", False)]


def test_collect_runs_independent_evaluations(tmp_path: Path) -> None:
    config = HiveConfig.default()
    config.evaluation.independent_passes = ["completeness", "risk"]
    backend = ScoringBackend()
    evaluator = ConfidenceEvaluator(config, tmp_path, AgentInvoker(config, backend))
    transcript = (
        "<!--HIVE_CRITIQUE\n"
        '{"critique_passed": true, "confidence_adjustment": -0.1}'
        "\nHIVE_CRITIQUE-->"
    )

    signals = asyncio.run(
        evaluator.collect(
            get_agent("architect"),
            _report(0.9),
            objective="Add search",
            phase="design",
            transcript=transcript,
            artifact_dir=tmp_path / "output",
        )
    )

    assert signals.critique_adjustment == -0.1
    assert signals.evaluations == {"completeness": 0.8, "risk": 0.4}
    assert len(backend.prompts) == 2
    assert (tmp_path / "output" / "design-eval-risk.md").is_file()
    score = evaluator.score(signals)
    assert score.score == 0.7429
    assert score.category == CLEAR_PASS
