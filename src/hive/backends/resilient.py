from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from hive.backends.base import AgentBackend, BackendExecutionError

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5


class ResilientBackend(AgentBackend):
    """Retries and fails over between backends until the first chunk is streamed.

    Once output has started the failure is raised as-is, since a replay would
    duplicate text that has already reached the transcript.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempts(self) -> list[tuple[str, AgentBackend]]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        for backend_name, backend in self._attempts():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                streamed = False
                try:
                    async for chunk in backend.execute(system_prompt, user_prompt, context):
                        streamed = True
                        yield chunk
                except BackendExecutionError as exc:
                    if streamed:
                        raise
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=True,
        )


class BackendRouter(AgentBackend):
    """Dispatches each call to the backend named by `context["backend"]`."""

    def __init__(self, backends: dict[str, AgentBackend], default: str) -> None:
        if default not in backends:
            raise ValueError(f"Unknown default backend: {default}")
        self.backends = backends
        self.default = default

    def select(self, context: dict[str, Any]) -> AgentBackend:
        name = str(context.get("backend") or self.default)
        backend = self.backends.get(name)
        if backend is None:
            raise BackendExecutionError(
                f"No backend configured for '{name}'.", backend=name, retriable=False
            )
        return backend

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        async for chunk in self.select(context).execute(system_prompt, user_prompt, context):
            yield chunk
