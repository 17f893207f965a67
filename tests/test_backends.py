import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from hive.backends import BackendRouter, RetryPolicy
from hive.backends.base import AgentBackend, BackendExecutionError
from hive.backends.claude import ClaudeCodeBackend
from hive.backends.codex import CodexBackend
from hive.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.calls = 0
        self.retriable = retriable

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    def __init__(self, text: str = "ok") -> None:
        self.text = text
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.contexts.append(dict(context))
        yield self.text


class FailAfterFirstChunkBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield "partial"
        raise BackendExecutionError("stream broke", backend="fake", retriable=True)


async def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    parts: list[str] = []
    async for part in backend.execute("system", "user", context or {}):
        parts.append(part)
    return "".join(parts)


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command("system", {"model": "gpt-5-codex"})

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert command[-1] == "-"


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("be terse", {"model": "sonnet"})

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "--model" in command
    assert "sonnet" in command
    assert command[-2:] == ["--append-system-prompt", "be terse"]


def test_claude_working_directory_override() -> None:
    backend = ClaudeCodeBackend(working_directory=Path("/repo"))

    assert backend._cwd({}) == "/repo"
    assert backend._cwd({"_working_directory": "/repo/.hive/worktrees/t1"}) == (
        "/repo/.hive/worktrees/t1"
    )


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()

    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0),
        event_hook=events.append,
    )

    output = asyncio.run(_collect(backend))

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_attempt_failed" in event_names
    assert "backend_retry" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0),
    )

    assert asyncio.run(_collect(backend)) == "ok"
    assert primary.calls == 1


def test_resilient_backend_does_not_replay_after_streaming_started() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=FailAfterFirstChunkBackend(),
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.0),
    )

    with pytest.raises(BackendExecutionError, match="stream broke"):
        asyncio.run(_collect(backend))


def test_resilient_backend_raises_when_all_attempts_fail() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="fallback",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        asyncio.run(_collect(backend))


def test_backend_router_dispatches_on_context_backend() -> None:
    claude = SuccessBackend("from-claude")
    codex = SuccessBackend("from-codex")
    router = BackendRouter({"claude": claude, "codex": codex}, default="claude")

    assert asyncio.run(_collect(router, {"backend": "codex", "model": "m"})) == "from-codex"
    assert asyncio.run(_collect(router)) == "from-claude"
    assert codex.contexts == [{"backend": "codex", "model": "m"}]


def test_backend_router_rejects_unknown_backend() -> None:
    router = BackendRouter({"claude": SuccessBackend()}, default="claude")

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(_collect(router, {"backend": "gemini"}))
    assert excinfo.value.retriable is False


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []

    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.pid = 4242
            self.returncode = 0
            self.stdin = None
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"response.output_text.delta\",\"content\":\"hello\"}\n",
                    b"noise-before-json\n",
                    b"{\"type\":\"response.completed\"}\n",
                ]
            )
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = CodexBackend(event_hook=events.append)
    output = asyncio.run(_collect(backend))

    assert output == "hellonoise-before-json\n"
    event_names = [event.get("event") for event in events]
    assert "codex_cli_start" in event_names
    assert "codex_json_event" in event_names
    assert "codex_json_parse_fallback" in event_names
    assert "codex_cli_exit" in event_names
