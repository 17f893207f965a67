from __future__ import annotations


class HiveError(RuntimeError):
    """Base class for orchestration failures."""


class InvocationError(HiveError):
    """Raised when an agent process fails, exits non-zero or times out."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class ReportParseError(HiveError):
    """Raised inside the report parser for a malformed envelope; surfaced as blocked."""


class HiveStateError(HiveError):
    """Raised when run-state, checkpoint or event-log operations fail."""


class WorkflowError(HiveError):
    """Raised for unknown workflows, agents or challenge targets."""


class MergeConflictError(HiveError):
    def __init__(self, message: str, *, branch: str, files: list[str]) -> None:
        super().__init__(message)
        self.branch = branch
        self.files = files
