import asyncio
import json
import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from hive.backends import BackendTimeoutError, ClaudeCodeBackend
from hive.backends.base import AgentBackend
from hive.config import HiveConfig
from hive.errors import InvocationError
from hive.invoker import AgentInvoker, record_cost


class EchoBackend(AgentBackend):
    def __init__(self) -> None:
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt
        self.contexts.append(dict(context))
        yield "x" * 40
        yield user_prompt[:8]


class StallingBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield "thinking...\n"
        await asyncio.sleep(30)
        yield "never"


def _fast_timeout_config() -> HiveConfig:
    config = HiveConfig.default()
    config.backend.timeout_seconds = 1.0
    return config


def test_invoke_streams_transcript_to_artifact_and_resolves_agent_settings(
    tmp_path: Path,
) -> None:
    config = HiveConfig.default()
    config.agents.overrides["tester"] = {"cli": "codex", "model": "gpt-5"}
    backend = EchoBackend()
    invoker = AgentInvoker(config, backend)
    artifact = tmp_path / "output" / "testing-attempt-1.md"

    result = asyncio.run(
        invoker.invoke(
            agent="tester",
            system_prompt="sys",
            prompt="run the tests",
            artifact_path=artifact,
            working_directory=tmp_path,
        )
    )

    assert result.transcript == "x" * 40 + "run the "
    assert artifact.read_text(encoding="utf-8") == result.transcript
    assert (result.backend, result.model) == ("codex", "gpt-5")
    assert backend.contexts == [
        {"backend": "codex", "model": "gpt-5", "_working_directory": str(tmp_path)}
    ]
    assert result.output_tokens == 12
    assert result.exit_code == 0


def test_timeout_raises_retriable_invocation_error(tmp_path: Path) -> None:
    invoker = AgentInvoker(_fast_timeout_config(), StallingBackend())
    artifact = tmp_path / "slow.md"

    with pytest.raises(BackendTimeoutError, match="timed out after 1.0s") as caught:
        asyncio.run(
            invoker.invoke(agent="architect", system_prompt="", prompt="p", artifact_path=artifact)
        )

    assert isinstance(caught.value, InvocationError)
    assert caught.value.retriable is True
    content = artifact.read_text(encoding="utf-8")
    assert content.startswith("thinking...")
    assert "[hive] timed out" in content


def test_timeout_kills_the_agent_process(tmp_path: Path) -> None:
    pid_file = tmp_path / "agent.pid"
    script = tmp_path / "fake-claude"
    script.write_text(
        f"#!{sys.executable}\n"
        "import os, sys, time\n"
        f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
        "print('started', flush=True)\n"
        "time.sleep(30)\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    backend = ClaudeCodeBackend(binary=str(script), extra_args=[])
    invoker = AgentInvoker(_fast_timeout_config(), backend)

    with pytest.raises(BackendTimeoutError):
        asyncio.run(
            invoker.invoke(
                agent="implementer",
                system_prompt="",
                prompt="build it",
                artifact_path=tmp_path / "out.md",
            )
        )

    pid = int(pid_file.read_text(encoding="utf-8"))
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_record_cost_accumulates_per_agent(tmp_path: Path) -> None:
    invoker = AgentInvoker(HiveConfig.default(), EchoBackend())
    cost_file = tmp_path / "cost.json"

    for agent in ("architect", "architect", "tester"):
        result = asyncio.run(
            invoker.invoke(
                agent=agent,
                system_prompt="",
                prompt="p" * 400,
                artifact_path=tmp_path / f"{agent}.md",
            )
        )
        record_cost(cost_file, result)

    payload = json.loads(cost_file.read_text(encoding="utf-8"))
    assert payload["total_calls"] == 3
    assert payload["agents"]["architect"]["calls"] == 2
    assert payload["agents"]["architect"]["input_tokens"] == 200
    assert payload["total_cost_usd"] == pytest.approx(
        sum(item["cost_usd"] for item in payload["agents"].values())
    )
