from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

IdleHook = Callable[[str], None]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeout(BackendExecutionError):
    """Raised when an agent invocation exceeds its deadline."""


class AgentUnavailable(BackendExecutionError):
    """Raised when no provider accepted an invocation."""

    def __init__(self, message: str, *, backend: str | None = None) -> None:
        super().__init__(message, backend=backend, retriable=False)


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""


class BackgroundBackend(ABC):
    """Launches work whose output is observed asynchronously."""

    idle_hook: IdleHook | None = None
    # True when the backend calls ``notify_idle`` itself once a handle stops working
    signals_idle: bool = False

    @abstractmethod
    async def launch(
        self,
        handle: str,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> None:
        """Start background execution addressed by ``handle``."""

    @abstractmethod
    async def fetch_output(self, handle: str) -> str:
        """Return the output produced so far; empty string when nothing yet."""

    @abstractmethod
    async def cancel(self, handle: str) -> None:
        """Best-effort cancellation."""

    def release(self, handle: str) -> None:
        """Drop bookkeeping for a handle whose work is finished."""
        _ = handle

    def notify_idle(self, handle: str) -> None:
        if self.idle_hook:
            self.idle_hook(handle)
