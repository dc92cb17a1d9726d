"""Bounded retry for idempotent operations."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeAlias, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cliharness.errors import RetryExhaustedError

T = TypeVar("T")
P = ParamSpec("P")

Operation: TypeAlias = Callable[[], Awaitable[T]]
Sleep: TypeAlias = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently an idempotent operation is retried.

    The delay after failed attempt ``n`` (1-based) is
    ``min(min_delay * factor ** (n - 1), max_delay)``. ``factor == 1`` keeps the
    delay constant.
    """

    retries: int = 3
    factor: float = 1.0
    min_delay: float = 1.0
    max_delay: float | None = None
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.min_delay < 0:
            raise ValueError("min_delay must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delay(self, attempt: int) -> float:
        """Delay slept after the given failed attempt."""
        value = self.min_delay * self.factor ** (attempt - 1)
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value


def _wait_strategy(policy: RetryPolicy) -> wait_exponential:
    kwargs: dict[str, Any] = {"multiplier": policy.min_delay, "exp_base": policy.factor, "min": 0}
    if policy.max_delay is not None:
        kwargs["max"] = policy.max_delay
    return wait_exponential(**kwargs)


def _log_failed_attempt(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome is not None else None
    delay = state.next_action.sleep if state.next_action is not None else 0.0
    logger.warning(
        "retry.attempt.failed attempt={} next_delay={:.2f}s error={!s}",
        state.attempt_number,
        delay,
        error,
    )


async def retry(
    operation: Operation[T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Call ``operation`` until it succeeds, at most ``policy.retries + 1`` times.

    Only exceptions listed in ``policy.retry_on`` trigger another attempt; any
    other exception propagates unchanged.

    Raises:
        RetryExhaustedError: every attempt failed.
    """
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait_strategy(policy),
        retry=retry_if_exception_type(policy.retry_on),
        before_sleep=_log_failed_attempt,
        sleep=sleep,
        reraise=False,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        assert last_error is not None
        raise RetryExhaustedError(exc.last_attempt.attempt_number, last_error) from last_error
    raise AssertionError("unreachable")  # pragma: no cover


def retrying(
    policy: RetryPolicy | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate an async function so every call runs under ``policy``."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await retry(lambda: func(*args, **kwargs), policy)

        return wrapper

    return decorator
