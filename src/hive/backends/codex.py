from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
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


class CodexBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, system_prompt: str, context: dict[str, Any]) -> list[str]:
        requested_model = context.get("model")
        command = [self.binary, "exec", "--json", "--full-auto"]
        if system_prompt.strip():
            command.extend(
                ["-c", f"instructions={json.dumps(system_prompt, ensure_ascii=False)}"]
            )
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        # Prompt is read from stdin.
        command.append("-")
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            text = item.get("text")
            if isinstance(text, str) and item.get("type") in {"agent_message", "assistant_message"}:
                return text + "\n"
            return ""

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, context)
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None
        self._emit({"event": "codex_cli_start", "model": context.get("model"), "cwd": cwd})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        try:
            if process.stdout is None:
                raise BackendProcessError(
                    "Codex backend did not expose stdout.", backend="codex", retriable=False
                )
            writer = asyncio.create_task(feed_stdin(process, user_prompt))

            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                    yield line + "\n"
                    continue
                if not isinstance(event, dict):
                    continue

                content = self._extract_content(event)
                self._emit(
                    {
                        "event": "codex_json_event",
                        "type": str(event.get("type", "")),
                        "has_content": bool(content),
                    }
                )
                if content:
                    yield content
            await writer

            if parse_buffer:
                logger.debug("codex left %d unparsed bytes", len(parse_buffer))
                yield parse_buffer + "\n"

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            self._emit({"event": "codex_cli_exit", "exit_code": return_code})
            if return_code != 0:
                raise BackendExecutionError(
                    f"Codex backend failed with exit code {return_code}: {stderr_output}",
                    backend="codex",
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            await terminate_process(process)
