from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from hive.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    feed_stdin,
    terminate_process,
)

logger = logging.getLogger(__name__)


class ClaudeCodeBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.extra_args = (
            list(extra_args) if extra_args is not None else ["--dangerously-skip-permissions"]
        )

    def build_command(self, system_prompt: str, context: dict[str, Any]) -> list[str]:
        command = [self.binary, "-p", "--output-format", "text", *self.extra_args]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["--model", requested_model.strip()])
        if system_prompt.strip():
            command.extend(["--append-system-prompt", system_prompt])
        return command

    def _cwd(self, context: dict[str, Any]) -> str | None:
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            return cwd_override
        return str(self.working_directory) if self.working_directory else None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, context)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._cwd(context),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        logger.debug("claude started pid=%s model=%s", process.pid, context.get("model"))
        try:
            if process.stdout is None:
                raise BackendProcessError(
                    "Claude backend did not expose stdout.", backend="claude", retriable=False
                )
            writer = asyncio.create_task(feed_stdin(process, user_prompt))
            async for raw_line in process.stdout:
                yield raw_line.decode("utf-8", errors="replace").replace("\r\n", "\n")
            await writer

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                raise BackendExecutionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend="claude",
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            await terminate_process(process)
