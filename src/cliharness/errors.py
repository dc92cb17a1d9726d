"""Exception types raised by the harness."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cliharness.polling import CheckResult
    from cliharness.process import ProcessResult


class HarnessError(Exception):
    """Base exception for cliharness."""


class SpawnError(HarnessError):
    """Raised when the executable could not be launched."""


class WriteError(HarnessError):
    """Raised when writing to a closed or inherited input channel."""


class ProtocolViolationError(HarnessError):
    """Raised when a second output wait is issued while one is pending."""


class ProcessExitedError(HarnessError):
    """Raised when the process ends before a pending wait was satisfied."""

    def __init__(self, exit_code: int | None, pending: str = "") -> None:
        self.exit_code = exit_code
        self.pending = pending
        super().__init__(f"process exited with code {exit_code} before output matched")


class CommandFailedError(HarnessError):
    """Raised when a rejecting invocation exits with a non-zero code."""

    def __init__(self, result: ProcessResult) -> None:
        self.result = result
        super().__init__(f"command {' '.join(result.args)!r} failed with exit code {result.exit_code}")


class RetryExhaustedError(HarnessError):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempts: {last_error!s}")


class UpstreamError(HarnessError):
    """Raised when a poll observes an instant-failure result."""

    def __init__(self, result: CheckResult) -> None:
        self.result = result
        super().__init__(f"upstream failure, received status {result.status}:\n{result.body!r}")


class PollTimeoutError(HarnessError, TimeoutError):
    """Raised when a poll session exceeds its deadline."""

    def __init__(self, elapsed: float, attempts: int, last_result: CheckResult | None) -> None:
        self.elapsed = elapsed
        self.attempts = attempts
        self.last_result = last_result
        status = last_result.status if last_result is not None else None
        body = last_result.body if last_result is not None else ""
        super().__init__(
            f"not ready after {elapsed:.1f}s and {attempts} checks.\nReceived status {status}:\n{body!r}"
        )
