"""
Completion detection for background work.

No single signal is trusted on its own. A record moves
``running -> idle_candidate`` on an idle notification, then to
``stable_candidate`` once the output fingerprint is identical across
``stable_observations`` consecutive polls, and finally to ``completed`` only if
the output passes the validity check for its kind. Unchanged output over
``idle_fallback_polls`` polls stands in for the notification only where no
notification can arrive: backends that never signal idleness, and records
restored after a restart. Every record carries a deadline; reaching it cancels
the backend work and moves the record to ``stuck``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, Literal

from magnus.backends.base import BackendExecutionError, BackgroundBackend
from magnus.config import MonitorConfig

logger = logging.getLogger(__name__)

DetectionState = Literal[
    "running", "idle_candidate", "stable_candidate", "completed", "stuck", "cancelled"
]
TERMINAL_STATES = frozenset({"completed", "stuck", "cancelled"})
MonitorEventHook = Callable[[dict[str, Any]], None]
OutputValidator = Callable[[str], bool]

_TEST_REPORT_PATTERN = re.compile(r"\b(pass(ed)?|fail(ed|ures?)?|ok|error(s)?)\b", re.IGNORECASE)


def _non_empty(output: str) -> bool:
    return bool(output.strip())


def _test_report(output: str) -> bool:
    return _non_empty(output) and bool(_TEST_REPORT_PATTERN.search(output))


def _json_document(output: str) -> bool:
    try:
        json.loads(output)
    except json.JSONDecodeError:
        return False
    return True


DEFAULT_VALIDATORS: dict[str, OutputValidator] = {
    "default": _non_empty,
    "test_report": _test_report,
    "json": _json_document,
}


def output_fingerprint(output: str) -> str:
    return hashlib.sha256(output.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class BackgroundTaskRecord:
    task_id: str
    session_id: str
    deadline: float
    kind: str = "default"
    detection_state: DetectionState = "running"
    last_fingerprint: str | None = None
    stable_observations: int = 0
    unchanged_polls: int = 0
    idle_notified: bool = False
    restored: bool = False
    last_polled_at: float | None = None
    polls: int = 0
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.detection_state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BackgroundTaskRecord:
        return cls(**payload)


class BackgroundTaskMonitor:
    def __init__(
        self,
        backend: BackgroundBackend,
        config: MonitorConfig,
        *,
        validators: dict[str, OutputValidator] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        event_hook: MonitorEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.validators = {**DEFAULT_VALIDATORS, **(validators or {})}
        self.clock = clock
        self.sleep = sleep
        self.event_hook = event_hook
        self._records: dict[str, BackgroundTaskRecord] = {}
        self._outputs: dict[str, str] = {}
        self._loops: dict[str, asyncio.Task[BackgroundTaskRecord]] = {}
        backend.idle_hook = self.notify_idle

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _transition(
        self, record: BackgroundTaskRecord, state: DetectionState, **details: Any
    ) -> None:
        previous = record.detection_state
        record.detection_state = state
        logger.debug("Background task %s: %s -> %s", record.task_id, previous, state)
        self._emit(
            {
                "event": f"background_{state}",
                "task_id": record.task_id,
                "session_id": record.session_id,
                "from": previous,
                **details,
            }
        )

    def track(
        self,
        task_id: str,
        session_id: str,
        *,
        kind: str = "default",
        timeout_seconds: float | None = None,
    ) -> BackgroundTaskRecord:
        timeout = self.config.deadline_seconds if timeout_seconds is None else timeout_seconds
        if timeout <= 0:
            raise ValueError("Background task timeout must be positive.")
        if kind not in self.validators:
            raise ValueError(f"No output validator registered for kind '{kind}'.")
        record = BackgroundTaskRecord(
            task_id=task_id,
            session_id=session_id,
            kind=kind,
            deadline=self.clock() + timeout,
        )
        self._records[task_id] = record
        self._outputs.pop(task_id, None)
        self._emit(
            {"event": "background_tracked", "task_id": task_id, "session_id": session_id}
        )
        return record

    def get(self, task_id: str) -> BackgroundTaskRecord | None:
        return self._records.get(task_id)

    def output(self, task_id: str) -> str:
        return self._outputs.get(task_id, "")

    async def collect(self, task_id: str) -> str:
        """Output of a tracked task, fetched once more when nothing is cached (after restore)."""
        if task_id not in self._outputs:
            output = await self._fetch(task_id)
            if output is not None:
                self._outputs[task_id] = output
        return self.output(task_id)

    def records(self, session_id: str | None = None) -> list[BackgroundTaskRecord]:
        return [
            record
            for record in self._records.values()
            if session_id is None or record.session_id == session_id
        ]

    def export(self, session_id: str) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.records(session_id)]

    def restore(self, payloads: list[dict[str, Any]]) -> list[BackgroundTaskRecord]:
        restored: list[BackgroundTaskRecord] = []
        for payload in payloads:
            record = BackgroundTaskRecord.from_dict(payload)
            # fingerprints observed before a restart say nothing about stability now
            record.stable_observations = 0
            record.unchanged_polls = 0
            record.last_polled_at = None
            record.restored = True
            self._records[record.task_id] = record
            restored.append(record)
        return restored

    def notify_idle(self, task_id: str) -> None:
        record = self._records.get(task_id)
        if record is None or record.terminal:
            return
        record.idle_notified = True
        if record.detection_state == "running":
            record.stable_observations = 0
            record.last_fingerprint = None
            self._transition(record, "idle_candidate", signal="notification")

    def _fallback_allowed(self, record: BackgroundTaskRecord) -> bool:
        # a notifying backend only loses its channel for records restored after a restart
        return record.restored or not self.backend.signals_idle

    async def _cancel_backend(self, task_id: str) -> None:
        try:
            await self.backend.cancel(task_id)
        except (BackendExecutionError, OSError) as exc:
            logger.warning("Best-effort cancellation of %s failed: %s", task_id, exc)

    async def _fetch(self, task_id: str) -> str | None:
        try:
            return await asyncio.wait_for(
                self.backend.fetch_output(task_id),
                timeout=max(self.config.poll_interval_seconds, 0.1),
            )
        except TimeoutError:
            logger.warning("Output fetch for %s timed out", task_id)
        except (BackendExecutionError, OSError) as exc:
            logger.warning("Output fetch for %s failed: %s", task_id, exc)
        return None

    async def poll(self, task_id: str) -> BackgroundTaskRecord:
        """Take one observation and apply every transition it allows."""
        record = self._records.get(task_id)
        if record is None:
            raise KeyError(task_id)
        if record.terminal:
            return record

        now = self.clock()
        if now >= record.deadline:
            await self._cancel_backend(task_id)
            record.error = "BackgroundTimeout"
            self._transition(record, "stuck", polls=record.polls)
            return record
        if (
            record.last_polled_at is not None
            and now - record.last_polled_at < self.config.min_poll_interval_seconds
        ):
            return record

        output = await self._fetch(task_id)
        record.last_polled_at = now
        record.polls += 1
        if output is None:
            record.stable_observations = 0
            record.unchanged_polls = 0
            record.last_fingerprint = None
            return record

        self._outputs[task_id] = output
        current = output_fingerprint(output)
        if current == record.last_fingerprint:
            record.stable_observations += 1
            record.unchanged_polls += 1
        else:
            record.stable_observations = 1
            record.unchanged_polls = 1
            record.last_fingerprint = current

        if (
            record.detection_state == "running"
            and self._fallback_allowed(record)
            and record.unchanged_polls >= self.config.idle_fallback_polls
        ):
            self._transition(record, "idle_candidate", signal="poll_fallback")

        if (
            record.detection_state == "idle_candidate"
            and record.stable_observations >= self.config.stable_observations
        ):
            self._transition(record, "stable_candidate", observations=record.stable_observations)

        if record.detection_state == "stable_candidate":
            validator = self.validators.get(record.kind, _non_empty)
            if validator(output):
                self.backend.release(task_id)
                self._transition(record, "completed", polls=record.polls)
            else:
                record.stable_observations = 0
                record.unchanged_polls = 0
                record.idle_notified = False
                self._transition(record, "running", reason="invalid_output")
        return record

    async def _run_loop(self, task_id: str) -> BackgroundTaskRecord:
        while True:
            record = await self.poll(task_id)
            if record.terminal:
                self._loops.pop(task_id, None)
                return record
            remaining = record.deadline - self.clock()
            await self.sleep(max(0.0, min(self.config.poll_interval_seconds, remaining)))

    def start(self, task_id: str) -> asyncio.Task[BackgroundTaskRecord]:
        """Start (or re-attach to) the polling loop of a tracked task."""
        if task_id not in self._records:
            raise KeyError(task_id)
        loop_task = self._loops.get(task_id)
        if loop_task is None or loop_task.done():
            loop_task = asyncio.create_task(self._run_loop(task_id))
            self._loops[task_id] = loop_task
        return loop_task

    async def wait(self, task_id: str) -> BackgroundTaskRecord:
        record = self._records.get(task_id)
        if record is not None and record.terminal:
            return record
        # the loop outlives a cancelled waiter
        return await asyncio.shield(self.start(task_id))

    async def cancel(self, task_id: str) -> BackgroundTaskRecord | None:
        record = self._records.get(task_id)
        if record is None or record.terminal:
            return record
        loop_task = self._loops.pop(task_id, None)
        if loop_task is not None:
            loop_task.cancel()
        await self._cancel_backend(task_id)
        record.error = "cancelled"
        self._transition(record, "cancelled")
        return record

    async def cancel_session(self, session_id: str) -> list[BackgroundTaskRecord]:
        cancelled: list[BackgroundTaskRecord] = []
        for record in self.records(session_id):
            if record.terminal:
                continue
            result = await self.cancel(record.task_id)
            if result is not None:
                cancelled.append(result)
        return cancelled

    def forget(self, session_id: str) -> int:
        """Drop the terminal records of a settled session; live records are kept."""
        dropped = 0
        for record in self.records(session_id):
            if not record.terminal:
                continue
            self._records.pop(record.task_id, None)
            self._outputs.pop(record.task_id, None)
            self._loops.pop(record.task_id, None)
            self.backend.release(record.task_id)
            dropped += 1
        return dropped
