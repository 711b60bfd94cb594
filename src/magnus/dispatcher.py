from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from magnus.gates import Issue, Severity
from magnus.monitor import BackgroundTaskMonitor

logger = logging.getLogger(__name__)

ExecutionGroup = Literal["preparation", "parallel", "consolidation", "presentation"]
TaskStatus = Literal["pending", "succeeded", "failed", "timeout"]
BatchVerdict = Literal["pass", "degraded-pass", "fail"]
DispatchEventHook = Callable[[dict[str, Any]], None]

EXECUTION_GROUPS: tuple[ExecutionGroup, ...] = (
    "preparation",
    "parallel",
    "consolidation",
    "presentation",
)


class InputInvalid(RuntimeError):
    """Raised before dispatch when a task cannot be issued; never retried."""


class MixedGroupError(InputInvalid):
    """Raised when a batch contains tasks of another execution group."""


class QuorumNotMet(RuntimeError):
    """Raised when consolidation is requested without enough successful parallel results."""


@dataclass(slots=True)
class TaskResult:
    status: TaskStatus = "pending"
    output_ref: str | None = None
    output: str = ""
    errors: list[str] = field(default_factory=list)
    kind: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "outputRef": self.output_ref,
            "errors": list(self.errors),
            "kind": self.kind,
        }


@dataclass(slots=True)
class Task:
    id: str
    role: str
    group: ExecutionGroup
    input_ref: str
    timeout_seconds: float
    background: bool = False
    kind: str = "default"
    required: bool = False
    tools: list[str] | None = None
    result: TaskResult = field(default_factory=TaskResult)


class TaskInvoker(ABC):
    """The injected capability that actually runs a role."""

    @abstractmethod
    async def invoke(
        self,
        role: str,
        input_ref: str,
        group: ExecutionGroup,
        deadline: float,
        *,
        tools: list[str] | None = None,
    ) -> TaskResult:
        """Run ``role`` on ``input_ref`` and finish before the monotonic ``deadline``."""

    @abstractmethod
    async def launch(self, task_id: str, role: str, input_ref: str) -> None:
        """Start background execution of ``role`` addressed by ``task_id``."""

    @abstractmethod
    def store_output(self, task_id: str, input_ref: str, output: str) -> str:
        """Persist output observed for a background task and return its reference."""

    def validate(self, task: Task) -> None:
        """Raise ``InputInvalid`` if the task cannot be issued."""


@dataclass(slots=True)
class BatchOutcome:
    group: ExecutionGroup
    tasks: list[Task]
    quorum: int = 1

    @property
    def succeeded(self) -> list[Task]:
        return [task for task in self.tasks if task.result.succeeded]

    @property
    def failed(self) -> list[Task]:
        return [task for task in self.tasks if not task.result.succeeded]

    @property
    def quorum_met(self) -> bool:
        return len(self.succeeded) >= min(self.quorum, len(self.tasks))

    @property
    def verdict(self) -> BatchVerdict:
        if not self.failed:
            return "pass"
        if not self.quorum_met or any(task.required for task in self.failed):
            return "fail"
        return "degraded-pass"

    def issues(self) -> list[Issue]:
        issues: list[Issue] = []
        for task in self.failed:
            severity: Severity = "critical" if task.required else "medium"
            detail = "; ".join(task.result.errors) or task.result.status
            issues.append(
                Issue(
                    severity=severity,
                    message=f"{task.role} task {task.id} {task.result.status}: {detail}",
                    source="dispatcher",
                )
            )
        if self.failed and not self.quorum_met:
            issues.append(
                Issue(
                    severity="critical",
                    message=(
                        f"{len(self.succeeded)} of {len(self.tasks)} {self.group} tasks succeeded; "
                        f"quorum is {self.quorum}"
                    ),
                    source="dispatcher",
                )
            )
        return issues


class TaskDispatcher:
    """Issues tasks in homogeneous execution-group batches, one batch at a time."""

    def __init__(
        self,
        invoker: TaskInvoker,
        *,
        session_id: str,
        monitor: BackgroundTaskMonitor | None = None,
        quorum: int = 2,
        required_roles: Iterable[str] = (),
        max_background: int = 2,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.invoker = invoker
        self.session_id = session_id
        self.monitor = monitor
        self.quorum = max(1, quorum)
        self.required_roles = frozenset(required_roles)
        self.event_hook = event_hook
        self.last_parallel: BatchOutcome | None = None
        self._issue_lock = asyncio.Lock()
        self._background_slots = asyncio.Semaphore(max(1, max_background))

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def create_task(
        self,
        task_id: str,
        role: str,
        group: ExecutionGroup,
        input_ref: str,
        *,
        timeout_seconds: float,
        background: bool = False,
        kind: str = "default",
        tools: list[str] | None = None,
    ) -> Task:
        return Task(
            id=task_id,
            role=role,
            group=group,
            input_ref=input_ref,
            timeout_seconds=timeout_seconds,
            background=background,
            kind=kind,
            required=role in self.required_roles,
            tools=tools,
        )

    def _validate_batch(self, tasks: list[Task], group: ExecutionGroup) -> None:
        if not tasks:
            raise InputInvalid(f"Empty {group} batch.")
        mixed = sorted({task.group for task in tasks if task.group != group})
        if mixed:
            raise MixedGroupError(
                f"{group} batch contains tasks tagged {', '.join(mixed)}; groups are never mixed."
            )
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                raise InputInvalid(f"Duplicate task id in batch: {task.id}")
            seen.add(task.id)
            if task.timeout_seconds <= 0:
                raise InputInvalid(f"Task {task.id} has no positive timeout.")
            if not task.input_ref:
                raise InputInvalid(f"Task {task.id} has no input reference.")
            if task.background and self.monitor is None:
                raise InputInvalid(f"Task {task.id} needs background tracking but has no monitor.")
            self.invoker.validate(task)

    async def _run_foreground(self, task: Task) -> TaskResult:
        deadline = time.monotonic() + task.timeout_seconds
        try:
            return await asyncio.wait_for(
                self.invoker.invoke(
                    task.role, task.input_ref, task.group, deadline, tools=task.tools
                ),
                timeout=task.timeout_seconds,
            )
        except TimeoutError:
            return TaskResult(
                status="timeout",
                errors=[f"exceeded {task.timeout_seconds:.1f}s deadline"],
                kind="AgentTimeout",
            )

    async def _run_background(self, task: Task) -> TaskResult:
        assert self.monitor is not None
        async with self._background_slots:
            record = self.monitor.get(task.id)
            if record is None or record.detection_state in {"stuck", "cancelled"}:
                await self.invoker.launch(task.id, task.role, task.input_ref)
                self.monitor.track(
                    task.id,
                    self.session_id,
                    kind=task.kind,
                    timeout_seconds=task.timeout_seconds,
                )
            else:
                logger.info(
                    "Re-attaching to background task %s (%s)", task.id, record.detection_state
                )
            record = await self.monitor.wait(task.id)

        if record.detection_state == "completed":
            output = await self.monitor.collect(task.id)
            return TaskResult(
                status="succeeded",
                output=output,
                output_ref=self.invoker.store_output(task.id, task.input_ref, output),
            )
        if record.detection_state == "stuck":
            return TaskResult(
                status="failed",
                errors=[f"no verified completion after {record.polls} polls"],
                kind="BackgroundTimeout",
            )
        return TaskResult(status="failed", errors=[record.error or "cancelled"], kind="Cancelled")

    async def _run_task(self, task: Task) -> Task:
        self._emit(
            {"event": "task_start", "task_id": task.id, "role": task.role, "group": task.group}
        )
        try:
            if task.background:
                task.result = await self._run_background(task)
            else:
                task.result = await self._run_foreground(task)
        except InputInvalid:
            raise
        except Exception as exc:
            logger.exception("Task %s (%s) raised", task.id, task.role)
            task.result = TaskResult(status="failed", errors=[str(exc)], kind=type(exc).__name__)
        event = "task_complete" if task.result.succeeded else "task_failed"
        self._emit(
            {
                "event": event,
                "task_id": task.id,
                "role": task.role,
                "group": task.group,
                "status": task.result.status,
                "kind": task.result.kind,
            }
        )
        return task

    async def _issue(
        self, tasks: list[Task], group: ExecutionGroup, *, concurrent: bool
    ) -> BatchOutcome:
        self._validate_batch(tasks, group)
        async with self._issue_lock:
            self._emit(
                {
                    "event": "dispatch_batch_start",
                    "session_id": self.session_id,
                    "group": group,
                    "tasks": [task.id for task in tasks],
                }
            )
            if concurrent:
                await asyncio.gather(*(self._run_task(task) for task in tasks))
            else:
                for index, task in enumerate(tasks):
                    await self._run_task(task)
                    if group == "preparation" and not task.result.succeeded:
                        for skipped in tasks[index + 1 :]:
                            skipped.result = TaskResult(
                                status="failed",
                                errors=[f"not issued: preparation task {task.id} failed"],
                                kind="PreparationFailed",
                            )
                        break
            outcome = BatchOutcome(group=group, tasks=tasks, quorum=self.quorum)
            self._emit(
                {
                    "event": "dispatch_batch_complete",
                    "session_id": self.session_id,
                    "group": group,
                    "verdict": outcome.verdict,
                    "succeeded": len(outcome.succeeded),
                    "failed": len(outcome.failed),
                }
            )
        return outcome

    async def dispatch_preparation(self, tasks: list[Task]) -> BatchOutcome:
        """Sequential setup work; stops at the first failure."""
        return await self._issue(tasks, "preparation", concurrent=False)

    async def dispatch_parallel(self, tasks: list[Task]) -> BatchOutcome:
        """Concurrent fan-out; a failed sibling never cancels the others."""
        outcome = await self._issue(tasks, "parallel", concurrent=True)
        self.last_parallel = outcome
        return outcome

    async def dispatch_consolidation(
        self, tasks: list[Task], *, prior: BatchOutcome | None = None
    ) -> BatchOutcome:
        source = prior if prior is not None else self.last_parallel
        if source is None:
            raise QuorumNotMet("Consolidation requires a completed parallel batch.")
        needed = min(self.quorum, len(source.tasks))
        if len(source.succeeded) < needed:
            raise QuorumNotMet(
                f"Only {len(source.succeeded)} of {len(source.tasks)} parallel tasks succeeded; "
                f"consolidation needs {needed}."
            )
        return await self._issue(tasks, "consolidation", concurrent=False)

    async def dispatch_presentation(self, tasks: list[Task]) -> BatchOutcome:
        return await self._issue(tasks, "presentation", concurrent=False)
