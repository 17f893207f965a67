from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.agents import AgentDefinition
from hive.checks import changed_files, find_debug_markers, run_command
from hive.config import HiveConfig
from hive.errors import InvocationError
from hive.invoker import AgentInvoker
from hive.report import HiveReport, parse_critique

logger = logging.getLogger(__name__)

CLEAR_PASS = "clear-pass"
NEEDS_REVIEW = "needs-review"
FAIL = "fail"
HARD_CHECKS = frozenset({"build", "typecheck", "tests"})
SCORE_PATTERN = re.compile(r'"score"\s*:\s*(-?\d+(?:\.\d+)?)')

EVALUATION_PROMPTS = {
    "completeness": "Does the output fully accomplish the phase task for the objective?",
    "coherence": "Is the output internally consistent and consistent with prior decisions?",
    "risk": "Is the output free of risky, destructive or insecure changes? (1.0 = no risk)",
}


@dataclass(slots=True)
class CheckResult:
    name: str
    passed: bool | None
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "detail": self.detail}


@dataclass(slots=True)
class ConfidenceSignals:
    self_reported: float
    critique_adjustment: float = 0.0
    checks: list[CheckResult] = field(default_factory=list)
    evaluations: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "self_reported": self.self_reported,
            "critique_adjustment": self.critique_adjustment,
            "checks": [item.to_dict() for item in self.checks],
            "evaluations": dict(sorted(self.evaluations.items())),
        }


@dataclass(slots=True)
class ConfidenceScore:
    score: float
    category: str
    components: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "category": self.category, "components": self.components}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ConfidenceEvaluator:
    def __init__(
        self,
        config: HiveConfig,
        repo_root: Path,
        invoker: AgentInvoker | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.invoker = invoker

    def automated_checks(
        self,
        agent: AgentDefinition,
        report: HiveReport,
        *,
        working_directory: Path | None = None,
        planned_files: list[str] | None = None,
    ) -> list[CheckResult]:
        cwd = working_directory or self.repo_root
        project = self.config.project
        timeout = project.command_timeout_seconds
        checks: list[CheckResult] = []

        if agent.execution_role:
            for name, command in (
                ("build", project.build_command),
                ("typecheck", project.typecheck_command),
            ):
                if not command:
                    continue
                result = run_command(command, cwd, timeout)
                checks.append(
                    CheckResult(
                        name,
                        result["exit_code"] == 0,
                        result["stderr_tail"] or result["stdout_tail"],
                    )
                )

            touched = sorted(set(report.files_modified) | set(changed_files(cwd)))
            planned = sorted(set(planned_files or []))
            if planned:
                overlap = sorted(set(planned) & set(touched))
                checks.append(
                    CheckResult(
                        "planned_files_touched",
                        bool(overlap),
                        f"{len(overlap)}/{len(planned)} planned files touched",
                    )
                )
            if touched:
                markers = find_debug_markers(
                    cwd, touched, list(self.config.evaluation.debug_markers)
                )
                checks.append(CheckResult("debug_markers_absent", not markers, "; ".join(markers)))

        if agent.runs_tests and project.test_command:
            result = run_command(project.test_command, cwd, timeout)
            checks.append(
                CheckResult(
                    "tests",
                    result["exit_code"] == 0,
                    result["stderr_tail"] or result["stdout_tail"],
                )
            )
        return checks

    async def independent_evaluations(
        self,
        *,
        objective: str,
        phase: str,
        transcript: str,
        artifact_dir: Path,
    ) -> dict[str, float]:
        passes = [name for name in self.config.evaluation.independent_passes if name]
        if not passes or self.invoker is None:
            return {}
        excerpt = transcript[-8000:]
        scores: dict[str, float] = {}
        for name in passes:
            question = EVALUATION_PROMPTS.get(name, f"Rate the {name} of the output.")
            prompt = (
                f"Objective: {objective}\nPhase: {phase}\n\n{question}\n"
                'Reply with a single JSON object {"score": <0.0-1.0>, "reason": "..."}.\n\n'
                f"Output under evaluation:\n{excerpt}"
            )
            try:
                result = await self.invoker.invoke(
                    agent="evaluator",
                    system_prompt="You are a strict, terse reviewer of AI agent output.",
                    prompt=prompt,
                    artifact_path=artifact_dir / f"{phase}-eval-{name}.md",
                    model=self.config.evaluation.evaluation_model,
                )
            except InvocationError as exc:
                logger.warning("evaluation pass %s failed for %s: %s", name, phase, exc)
                continue
            match = SCORE_PATTERN.search(result.transcript)
            if match is None:
                logger.warning("evaluation pass %s for %s returned no score", name, phase)
                continue
            scores[name] = _clamp(float(match.group(1)))
        return scores

    async def collect(
        self,
        agent: AgentDefinition,
        report: HiveReport,
        *,
        objective: str,
        phase: str,
        transcript: str,
        artifact_dir: Path,
        working_directory: Path | None = None,
        planned_files: list[str] | None = None,
    ) -> ConfidenceSignals:
        critique = parse_critique(transcript)
        return ConfidenceSignals(
            self_reported=report.confidence,
            critique_adjustment=critique.confidence_adjustment if critique else 0.0,
            checks=self.automated_checks(
                agent,
                report,
                working_directory=working_directory,
                planned_files=planned_files,
            ),
            evaluations=await self.independent_evaluations(
                objective=objective,
                phase=phase,
                transcript=transcript,
                artifact_dir=artifact_dir,
            ),
        )

    def score(self, signals: ConfidenceSignals) -> ConfidenceScore:
        """Combine signals into a routing score. Pure: equal signals give equal scores."""
        evaluation = self.config.evaluation
        self_score = _clamp(signals.self_reported + signals.critique_adjustment)
        weighted: list[tuple[float, float]] = [(evaluation.self_weight, self_score)]
        components: dict[str, Any] = {"self": round(self_score, 4)}

        ran = [item for item in signals.checks if item.passed is not None]
        if ran:
            ratio = sum(1 for item in ran if item.passed) / len(ran)
            weighted.append((evaluation.checks_weight, ratio))
            components["checks"] = round(ratio, 4)
        if signals.evaluations:
            mean = sum(signals.evaluations.values()) / len(signals.evaluations)
            weighted.append((evaluation.evaluation_weight, mean))
            components["evaluations"] = round(mean, 4)

        total_weight = sum(weight for weight, _ in weighted)
        if total_weight > 0:
            score = sum(weight * value for weight, value in weighted) / total_weight
        else:
            score = self_score
        score = round(_clamp(score), 4)

        hard_failures = sorted(
            item.name for item in ran if not item.passed and item.name in HARD_CHECKS
        )
        if hard_failures:
            components["hard_failures"] = hard_failures
            category = FAIL
        elif score >= evaluation.clear_pass_threshold:
            category = CLEAR_PASS
        elif score >= evaluation.needs_review_threshold:
            category = NEEDS_REVIEW
        else:
            category = FAIL
        return ConfidenceScore(score=score, category=category, components=components)
