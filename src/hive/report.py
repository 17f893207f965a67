from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from hive.errors import ReportParseError

REPORT_STATUSES = frozenset({"complete", "partial", "blocked", "challenge", "needs_input"})

COMMENT_BLOCK_PATTERN = re.compile(r"<!--\s*HIVE_REPORT\b(.*?)\bHIVE_REPORT\s*-->", re.DOTALL)
FENCED_BLOCK_PATTERN = re.compile(r"```hive_report[^\n]*\n(.*?)```", re.DOTALL)
CRITIQUE_BLOCK_PATTERN = re.compile(
    r"<!--\s*HIVE_CRITIQUE\b(.*?)\bHIVE_CRITIQUE\s*-->", re.DOTALL
)


@dataclass(slots=True)
class HiveReport:
    status: str
    confidence: float
    summary: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)
    source: str = "none"

    @property
    def parsed(self) -> bool:
        return self.source != "none"

    @property
    def files_modified(self) -> list[str]:
        files = self.payload.get("files_modified", [])
        if not isinstance(files, list):
            return []
        return [str(item) for item in files if str(item).strip()]

    @property
    def blockers(self) -> list[str]:
        blockers = self.payload.get("blockers", [])
        if isinstance(blockers, str):
            return [blockers] if blockers.strip() else []
        if not isinstance(blockers, list):
            return []
        return [str(item) for item in blockers if str(item).strip()]

    @property
    def decisions(self) -> list[dict[str, str]]:
        raw = self.payload.get("decisions", [])
        if not isinstance(raw, list):
            return []
        decisions: list[dict[str, str]] = []
        for item in raw:
            if isinstance(item, dict):
                text = str(item.get("decision") or item.get("summary") or "").strip()
                if text:
                    decisions.append(
                        {"decision": text, "rationale": str(item.get("rationale") or "")}
                    )
            elif str(item).strip():
                decisions.append({"decision": str(item).strip(), "rationale": ""})
        return decisions

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "confidence": self.confidence,
            "summary": self.summary,
            "payload": self.payload,
            "diagnostics": list(self.diagnostics),
            "source": self.source,
        }


@dataclass(slots=True)
class Critique:
    passed: bool
    checks_failed: list[str] = field(default_factory=list)
    issues_found: list[str] = field(default_factory=list)
    confidence_adjustment: float = 0.0
    ready_to_submit: bool = True


def _validate_envelope(payload: Any) -> tuple[str, float, list[str]]:
    if not isinstance(payload, dict):
        raise ReportParseError("report block is not a JSON object")
    status = payload.get("status")
    if not isinstance(status, str) or status.strip().lower() not in REPORT_STATUSES:
        raise ReportParseError(
            f"status must be one of {sorted(REPORT_STATUSES)}, got {status!r}"
        )
    notes: list[str] = []
    raw_confidence = payload.get("confidence")
    if raw_confidence is None:
        notes.append("confidence missing; defaulted to 0.0")
        confidence = 0.0
    elif isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float)):
        raise ReportParseError(f"confidence must be a number, got {raw_confidence!r}")
    else:
        confidence = float(raw_confidence)
        if not 0.0 <= confidence <= 1.0:
            raise ReportParseError(f"confidence must be within [0, 1], got {confidence}")
    return status.strip().lower(), confidence, notes


def _delimited_blocks(transcript: str) -> list[tuple[int, str, str]]:
    blocks = [
        (match.start(), "comment", match.group(1))
        for match in COMMENT_BLOCK_PATTERN.finditer(transcript)
    ]
    blocks.extend(
        (match.start(), "fenced", match.group(1))
        for match in FENCED_BLOCK_PATTERN.finditer(transcript)
    )
    return sorted(blocks, key=lambda item: item[0], reverse=True)


def _trailing_json_objects(transcript: str) -> list[dict[str, Any]]:
    decoder = json.JSONDecoder()
    objects: list[tuple[int, dict[str, Any]]] = []
    index = transcript.find("{")
    while index != -1:
        try:
            parsed, end = decoder.raw_decode(transcript, index)
        except json.JSONDecodeError:
            index = transcript.find("{", index + 1)
            continue
        if isinstance(parsed, dict) and "status" in parsed:
            objects.append((index, parsed))
        index = transcript.find("{", end)
    return [item for _, item in sorted(objects, key=lambda pair: pair[0], reverse=True)]


def _build(payload: dict[str, Any], source: str, notes: list[str]) -> HiveReport:
    status, confidence, envelope_notes = _validate_envelope(payload)
    return HiveReport(
        status=status,
        confidence=confidence,
        summary=str(payload.get("summary") or ""),
        payload=payload,
        diagnostics=[*notes, *envelope_notes],
        source=source,
    )


def blocked_report(diagnostics: list[str], summary: str = "") -> HiveReport:
    return HiveReport(
        status="blocked",
        confidence=0.0,
        summary=summary or "No valid HIVE_REPORT block found in agent output.",
        payload={"blockers": list(diagnostics)},
        diagnostics=list(diagnostics),
        source="none",
    )


def parse_report(transcript: str) -> HiveReport:
    """Return the last valid report block in `transcript`.

    Comment-wrapped (`<!--HIVE_REPORT ... HIVE_REPORT-->`) and fenced
    (```` ```hive_report ````) blocks are interchangeable. Without any
    delimited block the last bare JSON object carrying `status` is used.
    Anything else yields a synthesized `blocked` report.
    """
    diagnostics: list[str] = []
    for position, source, body in _delimited_blocks(transcript):
        try:
            payload = json.loads(body.strip())
        except json.JSONDecodeError as exc:
            diagnostics.append(f"{source} block at offset {position}: invalid JSON ({exc.msg})")
            continue
        try:
            return _build(payload, source, diagnostics)
        except ReportParseError as exc:
            diagnostics.append(f"{source} block at offset {position}: {exc}")

    if diagnostics:
        return blocked_report(diagnostics)

    for payload in _trailing_json_objects(transcript):
        try:
            return _build(payload, "json", ["no delimited report block; used bare JSON object"])
        except ReportParseError as exc:
            diagnostics.append(f"bare JSON object: {exc}")

    if not diagnostics:
        diagnostics.append("no HIVE_REPORT block found")
    return blocked_report(diagnostics)


def parse_critique(transcript: str) -> Critique | None:
    matches = list(CRITIQUE_BLOCK_PATTERN.finditer(transcript))
    for match in reversed(matches):
        try:
            payload = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        adjustment = payload.get("confidence_adjustment", 0.0)
        if isinstance(adjustment, bool) or not isinstance(adjustment, (int, float)):
            adjustment = 0.0
        return Critique(
            passed=bool(payload.get("critique_passed", True)),
            checks_failed=[str(item) for item in payload.get("checks_failed", []) or []],
            issues_found=[str(item) for item in payload.get("issues_found", []) or []],
            confidence_adjustment=max(-1.0, min(1.0, float(adjustment))),
            ready_to_submit=bool(payload.get("ready_to_submit", True)),
        )
    return None
