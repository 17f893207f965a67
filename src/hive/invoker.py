from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from hive.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from hive.config import HiveConfig
from hive.state import atomic_write_json, read_json

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InvocationResult:
    agent: str
    backend: str
    model: str
    transcript: str
    exit_code: int
    duration_seconds: float
    artifact_path: Path
    input_tokens: int
    output_tokens: int
    cost_usd: float


class AgentInvoker:
    """Runs one agent attempt: one process, one transcript artifact, one timeout."""

    def __init__(self, config: HiveConfig, backend: AgentBackend) -> None:
        self.config = config
        self.backend = backend

    def estimate_cost(self, prompt: str, transcript: str) -> tuple[int, int, float]:
        chars_per_token = max(1, int(self.config.cost.chars_per_token))
        input_tokens = len(prompt) // chars_per_token
        output_tokens = len(transcript) // chars_per_token
        cost = (
            input_tokens * self.config.cost.input_per_million
            + output_tokens * self.config.cost.output_per_million
        ) / 1_000_000
        return input_tokens, output_tokens, round(cost, 6)

    async def invoke(
        self,
        *,
        agent: str,
        system_prompt: str,
        prompt: str,
        artifact_path: Path,
        working_directory: Path | None = None,
        model: str | None = None,
    ) -> InvocationResult:
        backend_name, configured_model = self.config.agents.resolve(agent)
        model = model or configured_model
        context: dict[str, str] = {"backend": backend_name, "model": model}
        if working_directory is not None:
            context["_working_directory"] = str(working_directory)
        timeout = max(1.0, float(self.config.backend.timeout_seconds))

        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        chunks: list[str] = []
        started = time.monotonic()
        logger.info("invoking %s via %s (%s)", agent, backend_name, model)

        with artifact_path.open("w", encoding="utf-8") as handle:

            async def _consume() -> None:
                async for chunk in self.backend.execute(system_prompt, prompt, context):
                    chunks.append(chunk)
                    handle.write(chunk)
                    handle.flush()

            try:
                await asyncio.wait_for(_consume(), timeout=timeout)
            except TimeoutError as exc:
                handle.write(f"\n[hive] timed out after {timeout:.1f}s\n")
                raise BackendTimeoutError(
                    f"Agent '{agent}' timed out after {timeout:.1f}s",
                    backend=backend_name,
                    retriable=True,
                ) from exc
            except BackendExecutionError as exc:
                handle.write(f"\n[hive] {exc}\n")
                raise

        transcript = "".join(chunks)
        input_tokens, output_tokens, cost = self.estimate_cost(system_prompt + prompt, transcript)
        return InvocationResult(
            agent=agent,
            backend=backend_name,
            model=model,
            transcript=transcript,
            exit_code=0,
            duration_seconds=round(time.monotonic() - started, 3),
            artifact_path=artifact_path,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
        )


def record_cost(cost_file: Path, result: InvocationResult) -> dict:
    """Accumulate per-agent token and dollar totals in `cost.json`."""
    payload = read_json(cost_file) or {}
    agents = payload.setdefault("agents", {})
    entry = agents.setdefault(
        result.agent,
        {"input_tokens": 0, "output_tokens": 0, "cost_usd": 0.0, "calls": 0},
    )
    entry["input_tokens"] += result.input_tokens
    entry["output_tokens"] += result.output_tokens
    entry["cost_usd"] = round(entry["cost_usd"] + result.cost_usd, 6)
    entry["calls"] += 1
    payload["total_cost_usd"] = round(
        sum(float(item["cost_usd"]) for item in agents.values()), 6
    )
    payload["total_calls"] = sum(int(item["calls"]) for item in agents.values())
    atomic_write_json(cost_file, payload)
    return payload
