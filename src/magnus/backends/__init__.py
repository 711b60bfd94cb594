from magnus.backends.base import (
    AgentBackend,
    AgentTimeout,
    AgentUnavailable,
    BackendExecutionError,
    BackgroundBackend,
)
from magnus.backends.command import PROVIDER_COMMANDS, CommandBackend
from magnus.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "PROVIDER_COMMANDS",
    "AgentBackend",
    "AgentTimeout",
    "AgentUnavailable",
    "BackendExecutionError",
    "BackgroundBackend",
    "CommandBackend",
    "ResilientBackend",
    "RetryPolicy",
]
