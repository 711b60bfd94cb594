import asyncio
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from magnus.backends import RetryPolicy
from magnus.backends.base import (
    AgentBackend,
    AgentTimeout,
    AgentUnavailable,
    BackendExecutionError,
    BackgroundBackend,
)
from magnus.backends.command import CommandBackend, StreamDecoder
from magnus.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.attempts = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.attempts += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "o"
        yield "k"


class HangingBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        await asyncio.sleep(10)
        yield "late"


class RecordingBackground(SuccessBackend, BackgroundBackend):
    def __init__(self) -> None:
        self.launched: list[str] = []
        self.cancelled: list[str] = []
        self.released: list[str] = []

    async def launch(
        self,
        handle: str,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> None:
        _ = system_prompt, user_prompt, context
        self.launched.append(handle)

    async def fetch_output(self, handle: str) -> str:
        return f"{handle}: 3 passed"

    async def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)

    def release(self, handle: str) -> None:
        self.released.append(handle)


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
    def __init__(self, content: bytes = b"") -> None:
        self.content = content

    async def read(self) -> bytes:
        return self.content


class FakeProcess:
    pid = 4242

    def __init__(
        self, lines: list[bytes] | None = None, *, exit_code: int = 0, stderr: bytes = b""
    ) -> None:
        self.stdout = FakeStdout(lines or [])
        self.stderr = FakeStderr(stderr)
        self.exit_code = exit_code
        self.returncode: int | None = None

    async def wait(self) -> int:
        self.returncode = self.exit_code
        return self.exit_code


class StalledStdout(FakeStdout):
    async def __anext__(self) -> bytes:
        await asyncio.sleep(10)
        raise StopAsyncIteration


class StalledProcess(FakeProcess):
    def __init__(self) -> None:
        super().__init__()
        self.stdout = StalledStdout([])
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    def terminate(self) -> None:
        self.signals.append("terminate")
        self.returncode = -15
        self._exited.set()

    def kill(self) -> None:
        self.signals.append("kill")

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


def _collect(backend: AgentBackend) -> str:
    async def _run() -> str:
        chunks: list[str] = []
        async for chunk in backend.execute("system", "user", context={}):
            chunks.append(chunk)
        return "".join(chunks)

    return asyncio.run(_run())


def _policy(**overrides: Any) -> RetryPolicy:
    settings = {"max_retries": 1, "backoff_seconds": 0.0, "timeout_seconds": 5.0}
    settings.update(overrides)
    return RetryPolicy(**settings)


def test_claude_build_command_shape() -> None:
    backend = CommandBackend("claude", working_directory=Path("."))
    command = backend.build_command(
        "system",
        "implement feature",
        {"role": "planner", "model": "claude-sonnet-4"},
        tools=["read", "write"],
    )

    assert command[0:2] == ["claude", "-p"]
    assert "stream-json" in command
    assert command[command.index("--model") + 1] == "claude-sonnet-4"
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert "Context JSON:" in command[2]
    assert "Allowed tools:" in command[2]


def test_empty_model_drops_the_model_flag() -> None:
    backend = CommandBackend("opencode")
    command = backend.build_command("system", "review", {"role": "code_reviewer"})

    assert command[0:4] == ["opencode", "run", "--agent", "code_reviewer"]
    assert "--model" not in command
    assert command[-1].startswith("system\n\nreview")


def test_unknown_provider_needs_an_explicit_command() -> None:
    with pytest.raises(ValueError, match="No command template"):
        CommandBackend("aider")

    backend = CommandBackend("aider", ["aider", "--message", "{full_prompt}"])
    assert backend.build_command("", "hi", {}) == ["aider", "--message", "hi"]


def test_stream_decoder_reassembles_split_json() -> None:
    decoder = StreamDecoder()

    assert decoder.feed('{"delta":') == ""
    assert decoder.feed('"hel"}') == "hel"
    assert decoder.feed("plain text") == "plain text"
    assert decoder.feed("   ") == ""


def test_decode_lines_extracts_text_content() -> None:
    lines = [
        '{"type":"assistant","message":{"content":[{"type":"text","text":"Plan: "}]}}',
        '{"type":"result","content":"step one"}',
        '{"type":"system"}',
        "noise-before-json",
    ]

    assert CommandBackend.decode_lines(lines) == ["Plan: ", "step one", "noise-before-json"]


def test_execute_streams_decoded_chunks(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess([b'{"content":"hello"}\n', b'{"delta":" world"}\n'])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    output = _collect(CommandBackend("claude", working_directory=Path("/work")))

    assert output == "hello world"
    assert captured["args"][0] == "claude"
    assert captured["cwd"] == "/work"


def test_execute_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess(exit_code=2, stderr=b"rate limited")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError, match="rate limited") as excinfo:
        _collect(CommandBackend("claude"))
    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable


def test_missing_binary_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = kwargs
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(AgentUnavailable, match="binary not found"):
        _collect(CommandBackend("opencode"))


def test_background_launch_writes_log_and_signals_idle(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args
        kwargs["stdout"].write(b'{"content":"5 passed"}\n')
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend("claude", runtime_directory=tmp_path)
    idle: list[str] = []
    backend.idle_hook = idle.append

    async def _run() -> str:
        await backend.launch("testing-tester-i1-0", "system", "run tests", {"role": "tester"})
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return await backend.fetch_output("testing-tester-i1-0")

    assert asyncio.run(_run()) == "5 passed"
    assert idle == ["testing-tester-i1-0"]
    assert (tmp_path / "testing-tester-i1-0.log").exists()
    assert "testing-tester-i1-0" not in backend._processes


def test_fetch_output_before_any_log_is_empty(tmp_path: Path) -> None:
    backend = CommandBackend("claude", runtime_directory=tmp_path)

    assert asyncio.run(backend.fetch_output("missing")) == ""


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        [("primary", AlwaysFailBackend()), ("fallback", SuccessBackend())],
        _policy(),
        event_hook=events.append,
    )

    output = _collect(backend)

    assert output == "ok"
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_failover_start" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_non_retriable_errors_skip_to_the_next_provider() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        [("primary", primary), ("fallback", SuccessBackend())], _policy(max_retries=3)
    )

    assert _collect(backend) == "ok"
    assert primary.attempts == 1


def test_exhausted_chain_raises_agent_unavailable() -> None:
    first, second = AlwaysFailBackend(), AlwaysFailBackend()
    backend = ResilientBackend([("a", first), ("b", second)], _policy(max_retries=1))

    with pytest.raises(AgentUnavailable, match="All backend attempts failed"):
        _collect(backend)
    assert (first.attempts, second.attempts) == (2, 2)


def test_provider_timeout_counts_as_a_failed_attempt() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        [("slow", HangingBackend()), ("fast", SuccessBackend())],
        _policy(max_retries=0, timeout_seconds=0.05),
        event_hook=events.append,
    )

    assert _collect(backend) == "ok"
    failed = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert "timed out" in failed[0]["error"]


def test_empty_provider_chain_is_rejected() -> None:
    with pytest.raises(ValueError, match="at least one provider"):
        ResilientBackend([], _policy())


def test_background_calls_route_to_the_launching_provider() -> None:
    background = RecordingBackground()
    backend = ResilientBackend(
        [("foreground", SuccessBackend()), ("background", background)], _policy()
    )
    idle: list[str] = []
    backend.idle_hook = idle.append

    async def _run() -> str:
        await backend.launch("h-1", "system", "user", {"role": "tester"})
        output = await backend.fetch_output("h-1")
        await backend.cancel("h-1")
        return output

    assert asyncio.run(_run()) == "h-1: 3 passed"
    assert background.launched == ["h-1"]
    assert background.cancelled == ["h-1"]
    assert backend._launched == {}

    background.notify_idle("h-1")
    assert idle == ["h-1"]


def test_launch_without_background_capable_provider_is_unavailable() -> None:
    backend = ResilientBackend([("foreground", SuccessBackend())], _policy())

    with pytest.raises(AgentUnavailable, match="background"):
        asyncio.run(backend.launch("h-1", "system", "user", {}))


def test_timed_out_execution_terminates_the_agent_process(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    processes: list[StalledProcess] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> StalledProcess:
        _ = args, kwargs
        processes.append(StalledProcess())
        return processes[-1]

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ResilientBackend(
        [("claude", CommandBackend("claude"))], _policy(max_retries=0, timeout_seconds=0.05)
    )

    with pytest.raises(AgentUnavailable, match="timed out"):
        _collect(backend)
    assert [process.signals for process in processes] == [["terminate"]]


def test_task_deadline_leaves_time_for_the_fallback_provider() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        [("primary", HangingBackend()), ("fallback", SuccessBackend())],
        _policy(max_retries=0, timeout_seconds=30.0),
        event_hook=events.append,
    )

    async def _run() -> str:
        chunks: list[str] = []
        context = {"role": "planner", "deadline": time.monotonic() + 0.6}
        async for chunk in backend.execute("system", "user", context):
            chunks.append(chunk)
        return "".join(chunks)

    assert asyncio.run(asyncio.wait_for(_run(), timeout=0.6)) == "ok"
    assert events[-1]["event"] == "backend_fallback_success"


def test_expired_deadline_stops_the_chain() -> None:
    primary = AlwaysFailBackend()
    backend = ResilientBackend([("primary", primary)], _policy())

    async def _run() -> None:
        context = {"deadline": time.monotonic() - 1.0}
        async for _ in backend.execute("system", "user", context):
            pass

    with pytest.raises(AgentTimeout, match="deadline passed"):
        asyncio.run(_run())
    assert primary.attempts == 0


def test_chain_signals_idle_only_when_every_background_provider_does() -> None:
    command_chain = ResilientBackend([("claude", CommandBackend("claude"))], _policy())
    mixed_chain = ResilientBackend(
        [("claude", CommandBackend("claude")), ("recording", RecordingBackground())], _policy()
    )
    foreground_chain = ResilientBackend([("fast", SuccessBackend())], _policy())

    assert command_chain.signals_idle is True
    assert mixed_chain.signals_idle is False
    assert foreground_chain.signals_idle is False


def test_release_forgets_the_launching_provider() -> None:
    background = RecordingBackground()
    backend = ResilientBackend([("background", background)], _policy())

    async def _run() -> None:
        await backend.launch("h-1", "system", "user", {"role": "tester"})

    asyncio.run(_run())
    backend.release("h-1")
    backend.release("h-unknown")

    assert background.released == ["h-1"]
    assert backend._launched == {}
