from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from magnus.backends.base import (
    AgentBackend,
    AgentUnavailable,
    BackendExecutionError,
    BackgroundBackend,
)

logger = logging.getLogger(__name__)

PROVIDER_COMMANDS: dict[str, list[str]] = {
    "claude": [
        "claude",
        "-p",
        "{prompt}",
        "--output-format",
        "stream-json",
        "--verbose",
        "--append-system-prompt",
        "{system}",
        "--model",
        "{model}",
    ],
    "opencode": ["opencode", "run", "--agent", "{agent}", "--model", "{model}", "{full_prompt}"],
}


def _extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    message = event.get("message")
    if isinstance(message, dict):
        return _extract_content(message)
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    return ""


class StreamDecoder:
    """Turns stream-json lines (possibly split mid-object) into text chunks."""

    def __init__(self) -> None:
        self._buffer = ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, raw_line: str) -> str:
        line = raw_line.strip()
        if not line:
            return ""
        candidate = f"{self._buffer}{line}" if self._buffer else line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if self._appears_partial_json(candidate):
                self._buffer = candidate
                return ""
            self._buffer = ""
            return line
        self._buffer = ""
        if isinstance(event, dict):
            return _extract_content(event)
        return line

    def flush(self) -> str:
        tail, self._buffer = self._buffer, ""
        return tail


class CommandBackend(AgentBackend, BackgroundBackend):
    """Runs a host agent CLI as a subprocess, in the foreground or in the background."""

    # process exit is reported through notify_idle
    signals_idle = True

    def __init__(
        self,
        name: str,
        command: list[str] | None = None,
        *,
        working_directory: Path | None = None,
        runtime_directory: Path | None = None,
    ) -> None:
        if command is None:
            if name not in PROVIDER_COMMANDS:
                raise ValueError(f"No command template registered for provider '{name}'.")
            command = PROVIDER_COMMANDS[name]
        self.name = name
        self.command = list(command)
        self.working_directory = working_directory
        self.runtime_directory = runtime_directory or Path(tempfile.gettempdir()) / "magnus"
        self.idle_hook = None
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        prompt = user_prompt
        if context:
            prompt = (
                f"{prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
            )
        if tools:
            prompt = f"{prompt}\n\nAllowed tools:\n{json.dumps(tools, ensure_ascii=False)}"
        values = {
            "prompt": prompt,
            "system": system_prompt,
            "full_prompt": f"{system_prompt}\n\n{prompt}" if system_prompt else prompt,
            "model": str(context.get("model", "")),
            "agent": str(context.get("role", "build")),
        }
        rendered: list[str] = []
        for index, token in enumerate(self.command):
            # drop flags whose value rendered empty, e.g. "--model" without a model
            if token in {"{model}", "{agent}"} and not values[token[1:-1]]:
                if rendered and index > 0 and rendered[-1] == self.command[index - 1]:
                    rendered.pop()
                continue
            rendered.append(token.format(**values) if "{" in token else token)
        return rendered

    @classmethod
    def decode_lines(cls, lines: list[str]) -> list[str]:
        decoder = StreamDecoder()
        chunks = [chunk for line in lines if (chunk := decoder.feed(line))]
        tail = decoder.flush()
        if tail:
            chunks.append(tail)
        return chunks

    async def _spawn(self, command: list[str], stdout: Any) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE if stdout is asyncio.subprocess.PIPE else stdout,
            )
        except FileNotFoundError as exc:
            raise AgentUnavailable(
                f"{self.name} binary not found: {command[0]}", backend=self.name
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        process = await self._spawn(command, asyncio.subprocess.PIPE)
        try:
            if process.stdout is None:
                raise AgentUnavailable(
                    f"{self.name} backend did not expose stdout.", backend=self.name
                )

            decoder = StreamDecoder()
            async for raw_line in process.stdout:
                chunk = decoder.feed(raw_line.decode("utf-8", errors="replace"))
                if chunk:
                    yield chunk
            tail = decoder.flush()
            if tail:
                yield tail

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                raise BackendExecutionError(
                    f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            # timeouts and cancellation unwind through here with the agent still running
            if process.returncode is None:
                await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        logger.warning("Terminating %s process pid=%s", self.name, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            process.kill()

    def _output_path(self, handle: str) -> Path:
        return self.runtime_directory / f"{handle}.log"

    async def launch(
        self,
        handle: str,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> None:
        if handle in self._processes:
            raise BackendExecutionError(
                f"Background handle already running: {handle}", backend=self.name, retriable=False
            )
        self.runtime_directory.mkdir(parents=True, exist_ok=True)
        command = self.build_command(system_prompt, user_prompt, context)
        output_path = self._output_path(handle)
        with output_path.open("wb") as output_file:
            process = await self._spawn(command, output_file)
        self._processes[handle] = process
        self._watchers[handle] = asyncio.create_task(self._watch(handle, process))
        logger.info(
            "Launched background %s process pid=%s handle=%s", self.name, process.pid, handle
        )

    async def _watch(self, handle: str, process: asyncio.subprocess.Process) -> None:
        return_code = await process.wait()
        logger.debug("Background handle %s exited with %s", handle, return_code)
        self._processes.pop(handle, None)
        self._watchers.pop(handle, None)
        self.notify_idle(handle)

    async def fetch_output(self, handle: str) -> str:
        output_path = self._output_path(handle)
        if not output_path.exists():
            return ""
        raw = output_path.read_text(encoding="utf-8", errors="replace")
        return "".join(self.decode_lines(raw.splitlines())).strip()

    async def cancel(self, handle: str) -> None:
        process = self._processes.pop(handle, None)
        watcher = self._watchers.pop(handle, None)
        if watcher is not None:
            watcher.cancel()
        if process is not None and process.returncode is None:
            await self._terminate(process)

    def release(self, handle: str) -> None:
        process = self._processes.get(handle)
        if process is None or process.returncode is not None:
            self._processes.pop(handle, None)
            self._watchers.pop(handle, None)
