from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from magnus.backends.base import (
    AgentTimeout,
    AgentUnavailable,
    BackendExecutionError,
    BackgroundBackend,
)
from magnus.dispatcher import ExecutionGroup, InputInvalid, Task, TaskInvoker, TaskResult
from magnus.specialists.base import SpecialistAgent

logger = logging.getLogger(__name__)

INPUT_SUFFIX = ".input.md"
OUTPUT_SUFFIX = ".output.md"


def output_path_for(input_ref: str) -> Path:
    path = Path(input_ref)
    if path.name.endswith(INPUT_SUFFIX):
        return path.with_name(path.name[: -len(INPUT_SUFFIX)] + OUTPUT_SUFFIX)
    return path.with_name(path.stem + OUTPUT_SUFFIX)


class SpecialistInvoker(TaskInvoker):
    """Runs catalogue roles against materialized input files."""

    def __init__(
        self,
        specialists: dict[str, SpecialistAgent],
        background_backend: BackgroundBackend | None = None,
    ) -> None:
        self.specialists = specialists
        self.background_backend = background_backend

    def _agent(self, role: str) -> SpecialistAgent:
        agent = self.specialists.get(role)
        if agent is None:
            raise InputInvalid(f"No specialist registered for role '{role}'.")
        return agent

    @staticmethod
    def _read_input(input_ref: str) -> str:
        try:
            return Path(input_ref).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise InputInvalid(f"Input reference does not exist: {input_ref}") from exc

    def validate(self, task: Task) -> None:
        agent = self._agent(task.role)
        agent.normalize_tools(task.tools)
        if not Path(task.input_ref).is_file():
            raise InputInvalid(f"Input reference does not exist: {task.input_ref}")
        if task.background and self.background_backend is None:
            raise InputInvalid(f"Task {task.id} is a background task but no backend can launch it.")

    def store_output(self, task_id: str, input_ref: str, output: str) -> str:
        path = output_path_for(input_ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output, encoding="utf-8")
        logger.debug("Stored output of %s at %s", task_id, path)
        return str(path)

    async def invoke(
        self,
        role: str,
        input_ref: str,
        group: ExecutionGroup,
        deadline: float,
        *,
        tools: list[str] | None = None,
    ) -> TaskResult:
        agent = self._agent(role)
        instruction = self._read_input(input_ref)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return TaskResult(
                status="timeout", errors=["deadline passed before start"], kind="AgentTimeout"
            )

        try:
            response = await asyncio.wait_for(
                agent.run(
                    instruction,
                    {"group": group, "input_ref": input_ref, "deadline": deadline},
                    tools,
                ),
                timeout=remaining,
            )
        except (TimeoutError, AgentTimeout) as exc:
            return TaskResult(
                status="timeout", errors=[str(exc) or "timed out"], kind="AgentTimeout"
            )
        except AgentUnavailable as exc:
            return TaskResult(status="failed", errors=[str(exc)], kind="AgentUnavailable")
        except BackendExecutionError as exc:
            return TaskResult(status="failed", errors=[str(exc)], kind="BackendExecutionError")

        if not response.content:
            return TaskResult(
                status="failed", errors=[f"{role} returned no output"], kind="EmptyOutput"
            )
        output_ref = self.store_output(role, input_ref, response.content)
        return TaskResult(status="succeeded", output=response.content, output_ref=output_ref)

    async def launch(self, task_id: str, role: str, input_ref: str) -> None:
        if self.background_backend is None:
            raise InputInvalid(f"No background backend available for {task_id}.")
        agent = self._agent(role)
        context = {"role": role, "input_ref": input_ref}
        if agent.model:
            context["model"] = agent.model
        await self.background_backend.launch(
            task_id,
            agent.system_prompt,
            self._read_input(input_ref),
            context,
        )
