from __future__ import annotations

import logging
from typing import Literal

from hive.context import render_challenge_directive
from hive.errors import WorkflowError
from hive.events import EventLog
from hive.models import Challenge, Run
from hive.report import HiveReport

logger = logging.getLogger(__name__)

Route = Literal["replay", "escalate"]


class ChallengeRouter:
    """Bounds the number of replays per challenger->challenged edge."""

    def __init__(self, max_rounds: int = 1) -> None:
        self.max_rounds = max(0, int(max_rounds))

    @staticmethod
    def _target_index(run: Run, challenger_index: int, target: str) -> int:
        for index in range(challenger_index - 1, -1, -1):
            phase = run.phases[index]
            if target in {phase.name, phase.agent}:
                return index
        raise WorkflowError(
            f"Challenge target '{target}' does not precede phase "
            f"'{run.phases[challenger_index].name}'."
        )

    def challenge_from_report(self, run: Run, index: int, report: HiveReport) -> Challenge:
        payload = report.payload
        target = str(
            payload.get("challenged_agent") or payload.get("challenged_phase") or ""
        ).strip()
        if not target:
            raise WorkflowError("Challenge report does not name a challenged agent.")
        challenged_index = self._target_index(run, index, target)
        return Challenge(
            challenger=run.phases[index].name,
            challenged=run.phases[challenged_index].name,
            challenged_index=challenged_index,
            issue=str(payload.get("issue") or report.summary or ""),
            evidence=str(payload.get("evidence") or ""),
            suggestion=str(payload.get("suggestion") or ""),
            severity=str(payload.get("severity") or "medium"),
            can_proceed_with_default=bool(payload.get("can_proceed_with_default", False)),
        )

    def rounds(self, run: Run, edge: str) -> int:
        return len(run.challenges.get(edge, []))

    def route(self, run: Run, challenge: Challenge, events: EventLog) -> Route:
        previous = self.rounds(run, challenge.edge)
        run.challenges.setdefault(challenge.edge, []).append(challenge.to_dict())
        events.emit(
            "challenge_raised",
            actor=challenge.challenger,
            challenged=challenge.challenged,
            edge=challenge.edge,
            round=previous + 1,
            issue=challenge.issue,
            severity=challenge.severity,
        )
        if previous < self.max_rounds:
            logger.info("replaying %s for challenge on %s", challenge.challenged, challenge.edge)
            return "replay"
        events.emit(
            "challenge_escalated",
            actor=challenge.challenger,
            edge=challenge.edge,
            challenges=list(run.challenges[challenge.edge]),
        )
        return "escalate"

    @staticmethod
    def directive(challenge: Challenge) -> str:
        return render_challenge_directive(challenge)

    @staticmethod
    def resolved(challenge: Challenge, events: EventLog, report: HiveReport) -> None:
        events.emit(
            "challenge_resolved",
            actor=challenge.challenged,
            edge=challenge.edge,
            status=report.status,
            summary=report.summary,
        )
