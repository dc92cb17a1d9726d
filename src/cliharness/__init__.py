"""cliharness - drive a CLI like a user, wait for the cloud to catch up."""

from .errors import (
    CommandFailedError,
    HarnessError,
    PollTimeoutError,
    ProcessExitedError,
    ProtocolViolationError,
    RetryExhaustedError,
    SpawnError,
    UpstreamError,
    WriteError,
)
from .polling import CheckResult, is_server_error, poll_until_ready
from .process import ManagedProcess, ProcessResult, PromptMatch, SpawnOptions, run, spawn
from .retry import RetryPolicy, retry, retrying

__version__ = "0.1.0"

__all__ = [
    "CheckResult",
    "CommandFailedError",
    "HarnessError",
    "ManagedProcess",
    "PollTimeoutError",
    "ProcessExitedError",
    "ProcessResult",
    "PromptMatch",
    "ProtocolViolationError",
    "RetryExhaustedError",
    "RetryPolicy",
    "SpawnError",
    "SpawnOptions",
    "UpstreamError",
    "WriteError",
    "is_server_error",
    "poll_until_ready",
    "retry",
    "retrying",
    "run",
    "spawn",
]
