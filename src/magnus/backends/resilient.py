from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from magnus.backends.base import (
    AgentBackend,
    AgentTimeout,
    AgentUnavailable,
    BackendExecutionError,
    BackgroundBackend,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class ResilientBackend(AgentBackend, BackgroundBackend):
    """Walks an ordered provider chain with per-provider timeout, retry and backoff."""

    def __init__(
        self,
        providers: list[tuple[str, AgentBackend]],
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if not providers:
            raise ValueError("ResilientBackend requires at least one provider.")
        self.providers = list(providers)
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.idle_hook = None
        self._launched: dict[str, tuple[str, BackgroundBackend]] = {}
        capable = [
            backend for _, backend in self.providers if isinstance(backend, BackgroundBackend)
        ]
        self.signals_idle = bool(capable) and all(backend.signals_idle for backend in capable)
        for backend in capable:
            backend.idle_hook = self.notify_idle

    @property
    def provider_names(self) -> list[str]:
        return [name for name, _ in self.providers]

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect_chunks(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
        timeout: float,
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context, tools):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise AgentTimeout(
                f"Backend request timed out after {timeout:.1f}s", retriable=True
            ) from exc

    def _attempt_timeout(self, deadline: float | None, providers_left: int) -> float:
        """Per-attempt timeout; with a deadline, each remaining provider gets an equal share."""
        if deadline is None:
            return self.retry_policy.timeout_seconds
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AgentTimeout("Task deadline passed before the provider chain finished.")
        return min(self.retry_policy.timeout_seconds, remaining / providers_left)

    async def _execute_attempts(
        self,
        call_name: str,
        call: Callable[[str, Any, float], Awaitable[T]],
        *,
        providers: list[tuple[str, Any]] | None = None,
        deadline: float | None = None,
    ) -> tuple[str, T]:
        chain = providers if providers is not None else self.providers
        primary_name = self.providers[0][0]
        errors: list[str] = []
        for position, (backend_name, backend) in enumerate(chain):
            if position > 0:
                self._emit(
                    {"event": "backend_failover_start", "backend": backend_name, "call": call_name}
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": call_name,
                        }
                    )
                    await asyncio.sleep(delay)
                timeout = self._attempt_timeout(deadline, len(chain) - position)
                try:
                    result = await call(backend_name, backend, timeout)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except OSError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue
                if backend_name != primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": call_name,
                        }
                    )
                return backend_name, result

        summary = "; ".join(errors[-6:])
        logger.error("All providers failed for %s: %s", call_name, summary)
        raise AgentUnavailable(f"All backend attempts failed for {call_name}. {summary}")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Run the chain; a ``deadline`` (monotonic) in ``context`` bounds every attempt."""
        provider_context = dict(context)
        deadline = provider_context.pop("deadline", None)
        _, chunks = await self._execute_attempts(
            "execute",
            lambda _name, backend, timeout: self._collect_chunks(
                backend,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                context=provider_context,
                tools=tools,
                timeout=timeout,
            ),
            deadline=deadline,
        )
        for chunk in chunks:
            yield chunk

    async def launch(
        self,
        handle: str,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> None:
        capable = [
            (name, backend)
            for name, backend in self.providers
            if isinstance(backend, BackgroundBackend)
        ]
        if not capable:
            raise AgentUnavailable("No provider in the chain supports background execution.")

        async def _launch(_name: str, backend: BackgroundBackend, timeout: float) -> None:
            try:
                await asyncio.wait_for(
                    backend.launch(handle, system_prompt, user_prompt, context),
                    timeout=timeout,
                )
            except TimeoutError as exc:
                raise AgentTimeout("Background launch timed out.", retriable=True) from exc

        provider_name, _ = await self._execute_attempts("launch", _launch, providers=capable)
        backend = dict(capable)[provider_name]
        self._launched[handle] = (provider_name, backend)

    def _route(self, handle: str) -> BackgroundBackend:
        routed = self._launched.get(handle)
        if routed is not None:
            return routed[1]
        for _, backend in self.providers:
            if isinstance(backend, BackgroundBackend):
                return backend
        raise AgentUnavailable(f"No background provider known for handle {handle}.")

    async def fetch_output(self, handle: str) -> str:
        return await self._route(handle).fetch_output(handle)

    async def cancel(self, handle: str) -> None:
        backend = self._route(handle)
        self._launched.pop(handle, None)
        await backend.cancel(handle)

    def release(self, handle: str) -> None:
        routed = self._launched.pop(handle, None)
        if routed is not None:
            routed[1].release(handle)
