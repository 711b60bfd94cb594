import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from magnus.backends.base import BackendExecutionError, BackgroundBackend
from magnus.config import MonitorConfig
from magnus.monitor import BackgroundTaskMonitor


class ScriptedBackground(BackgroundBackend):
    def __init__(self, produce: Callable[[int], str]) -> None:
        self.produce = produce
        self.fetches = 0
        self.cancelled: list[str] = []

    async def launch(
        self,
        handle: str,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> None:
        _ = handle, system_prompt, user_prompt, context

    async def fetch_output(self, handle: str) -> str:
        _ = handle
        output = self.produce(self.fetches)
        self.fetches += 1
        return output

    async def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.01)


def _monitor(
    backend: BackgroundBackend, clock: FakeClock, **overrides: Any
) -> tuple[BackgroundTaskMonitor, list[dict[str, Any]]]:
    settings = {
        "poll_interval_seconds": 1.0,
        "min_poll_interval_seconds": 0.0,
        "stable_observations": 2,
        "idle_fallback_polls": 3,
        "deadline_seconds": 30.0,
    }
    settings.update(overrides)
    events: list[dict[str, Any]] = []
    monitor = BackgroundTaskMonitor(
        backend,
        MonitorConfig(**settings),
        clock=clock,
        sleep=clock.sleep,
        event_hook=events.append,
    )
    return monitor, events


def test_idle_signal_plus_stable_output_completes() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "12 passed, 0 failed")
    monitor, events = _monitor(backend, clock)
    monitor.track("task-1", "ses-1", kind="test_report")

    backend.notify_idle("task-1")
    record = asyncio.run(monitor.wait("task-1"))

    assert record.detection_state == "completed"
    assert record.polls == 2
    assert monitor.output("task-1") == "12 passed, 0 failed"
    states = [event["event"] for event in events]
    assert states.index("background_idle_candidate") < states.index("background_stable_candidate")
    assert states[-1] == "background_completed"


def test_changing_output_never_completes_and_ends_stuck() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda count: f"running step {count}")
    monitor, events = _monitor(backend, clock, deadline_seconds=6.0)
    monitor.track("task-1", "ses-1")

    backend.notify_idle("task-1")
    record = asyncio.run(monitor.wait("task-1"))

    assert record.detection_state == "stuck"
    assert record.error == "BackgroundTimeout"
    assert record.polls >= 5
    assert "background_completed" not in [event["event"] for event in events]
    assert backend.cancelled == ["task-1"]


def test_poll_fallback_without_idle_notification() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "done")
    monitor, events = _monitor(backend, clock)
    monitor.track("task-1", "ses-1")

    async def _poll_three_times() -> list[str]:
        states = []
        for _ in range(3):
            record = await monitor.poll("task-1")
            states.append(record.detection_state)
        return states

    states = asyncio.run(_poll_three_times())

    assert states == ["running", "running", "completed"]
    idle = [event for event in events if event["event"] == "background_idle_candidate"]
    assert idle[0]["signal"] == "poll_fallback"


def test_idle_signal_alone_is_not_completion() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "done")
    monitor, _ = _monitor(backend, clock)
    monitor.track("task-1", "ses-1")

    backend.notify_idle("task-1")
    record = asyncio.run(monitor.poll("task-1"))

    assert record.detection_state == "idle_candidate"
    assert record.stable_observations == 1


def test_invalid_output_returns_to_running() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "still thinking")
    monitor, events = _monitor(backend, clock)
    monitor.track("task-1", "ses-1", kind="test_report")

    async def _poll_twice() -> None:
        await monitor.poll("task-1")
        await monitor.poll("task-1")

    backend.notify_idle("task-1")
    asyncio.run(_poll_twice())

    record = monitor.get("task-1")
    assert record is not None
    assert record.detection_state == "running"
    assert events[-1]["reason"] == "invalid_output"


def test_minimum_poll_spacing_skips_early_polls() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "done")
    monitor, _ = _monitor(backend, clock, min_poll_interval_seconds=2.0)
    monitor.track("task-1", "ses-1")

    async def _poll_quickly() -> int:
        await monitor.poll("task-1")
        clock.now += 1.0
        record = await monitor.poll("task-1")
        return record.polls

    assert asyncio.run(_poll_quickly()) == 1
    assert backend.fetches == 1


def test_fetch_errors_reset_stability() -> None:
    clock = FakeClock()

    def produce(count: int) -> str:
        if count == 1:
            raise BackendExecutionError("gone", backend="fake")
        return "done"

    backend = ScriptedBackground(produce)
    monitor, _ = _monitor(backend, clock)
    monitor.track("task-1", "ses-1")
    backend.notify_idle("task-1")

    async def _poll_twice() -> int:
        await monitor.poll("task-1")
        record = await monitor.poll("task-1")
        return record.stable_observations

    assert asyncio.run(_poll_twice()) == 0


def test_cancel_is_best_effort_and_terminal() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "")
    monitor, _ = _monitor(backend, clock)
    monitor.track("task-1", "ses-1")
    monitor.track("task-2", "ses-2")

    cancelled = asyncio.run(monitor.cancel_session("ses-1"))

    assert [record.task_id for record in cancelled] == ["task-1"]
    assert backend.cancelled == ["task-1"]
    assert monitor.get("task-1").detection_state == "cancelled"
    assert monitor.get("task-2").detection_state == "running"


def test_export_and_restore_keep_deadline_but_reset_counters() -> None:
    clock = FakeClock()
    backend = ScriptedBackground(lambda _: "done")
    monitor, _ = _monitor(backend, clock)
    monitor.track("task-1", "ses-1", timeout_seconds=10.0)
    backend.notify_idle("task-1")
    asyncio.run(monitor.poll("task-1"))

    exported = monitor.export("ses-1")
    fresh, _ = _monitor(backend, clock)
    restored = fresh.restore(exported)

    assert restored[0].deadline == pytest.approx(1010.0)
    assert restored[0].detection_state == "idle_candidate"
    assert restored[0].stable_observations == 0
    assert restored[0].last_polled_at is None


def test_track_rejects_unknown_kind_and_bad_timeout() -> None:
    monitor, _ = _monitor(ScriptedBackground(lambda _: ""), FakeClock())

    with pytest.raises(ValueError, match="validator"):
        monitor.track("task-1", "ses-1", kind="screenshot")
    with pytest.raises(ValueError, match="positive"):
        monitor.track("task-1", "ses-1", timeout_seconds=0)


class NotifyingBackground(ScriptedBackground):
    signals_idle = True


def test_quiet_output_without_notification_is_not_completion_for_notifying_backends() -> None:
    clock = FakeClock()
    backend = NotifyingBackground(lambda _: "collected 40 items ... 3 passed so far")
    monitor, events = _monitor(backend, clock, deadline_seconds=12.0)
    monitor.track("task-1", "ses-1", kind="test_report")

    record = asyncio.run(monitor.wait("task-1"))

    assert record.detection_state == "stuck"
    assert record.idle_notified is False
    assert record.polls >= 10
    assert "background_idle_candidate" not in [event["event"] for event in events]
    assert backend.cancelled == ["task-1"]


def test_restored_records_fall_back_to_polling_on_notifying_backends() -> None:
    clock = FakeClock()
    backend = NotifyingBackground(lambda _: "12 passed, 0 failed")
    monitor, _ = _monitor(backend, clock)
    monitor.track("task-1", "ses-1", kind="test_report")
    exported = monitor.export("ses-1")

    fresh, events = _monitor(backend, clock)
    fresh.restore(exported)
    record = asyncio.run(fresh.wait("task-1"))

    assert record.detection_state == "completed"
    idle = [event for event in events if event["event"] == "background_idle_candidate"]
    assert idle[0]["signal"] == "poll_fallback"


def test_forget_drops_only_terminal_records_of_a_session() -> None:
    clock = FakeClock()
    released: list[str] = []
    backend = ScriptedBackground(lambda _: "done")
    backend.release = released.append
    monitor, _ = _monitor(backend, clock)
    monitor.track("task-1", "ses-1")
    monitor.track("task-2", "ses-1")
    monitor.track("task-3", "ses-2")
    backend.notify_idle("task-1")

    async def _settle_first() -> None:
        await monitor.wait("task-1")
        await monitor.cancel("task-3")

    asyncio.run(_settle_first())

    assert monitor.forget("ses-1") == 1
    assert monitor.get("task-1") is None
    assert monitor.output("task-1") == ""
    assert monitor.get("task-2") is not None
    assert monitor.get("task-3") is not None
    assert released == ["task-1", "task-1"]
