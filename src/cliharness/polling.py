"""Readiness polling against eventually-consistent backends."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias

from loguru import logger

from cliharness.errors import PollTimeoutError, UpstreamError

SERVER_ERROR_STATUS = 500


@dataclass(frozen=True)
class CheckResult:
    """One observation made by a readiness check."""

    status: int | None
    body: str = ""
    ready: bool = False


Check: TypeAlias = Callable[[], Awaitable[CheckResult]]
FailurePredicate: TypeAlias = Callable[[CheckResult], bool]
Sleep: TypeAlias = Callable[[float], Awaitable[None]]


def is_server_error(result: CheckResult) -> bool:
    """Instant-failure predicate for HTTP 5xx responses."""
    return result.status is not None and result.status >= SERVER_ERROR_STATUS


@dataclass
class PollSession:
    check: Check
    interval: float
    deadline: float
    started_at: float
    is_instant_failure: FailurePredicate | None = None
    attempts: int = 0
    last_result: CheckResult | None = None

    def elapsed(self, now: float) -> float:
        return now - self.started_at


async def poll_until_ready(
    check: Check,
    *,
    interval: float,
    deadline: float,
    is_instant_failure: FailurePredicate | None = None,
    sleep: Sleep = asyncio.sleep,
) -> CheckResult:
    """Run ``check`` every ``interval`` seconds until it reports ready.

    After every check the result is evaluated in order: ready resolves,
    ``is_instant_failure`` raises ``UpstreamError`` at once, and more than
    ``deadline`` seconds since the first check raises ``PollTimeoutError``.
    Errors raised by ``check`` itself propagate.
    """
    if interval < 0 or deadline < 0:
        raise ValueError("interval and deadline must be >= 0")
    loop = asyncio.get_running_loop()
    started_at = loop.time()
    session = PollSession(
        check=check,
        interval=interval,
        deadline=started_at + deadline,
        started_at=started_at,
        is_instant_failure=is_instant_failure,
    )

    while True:
        result = await session.check()
        session.attempts += 1
        session.last_result = result
        if result.ready:
            logger.info("poll.ready attempts={} elapsed={:.2f}s", session.attempts, session.elapsed(loop.time()))
            return result

        if session.is_instant_failure is not None and session.is_instant_failure(result):
            logger.info("poll.failed attempts={} status={}", session.attempts, result.status)
            raise UpstreamError(result)

        now = loop.time()
        if now > session.deadline:
            logger.info("poll.timeout attempts={} status={}", session.attempts, result.status)
            raise PollTimeoutError(session.elapsed(now), session.attempts, result)

        logger.debug("poll.pending attempt={} status={}", session.attempts, result.status)
        await sleep(session.interval)
