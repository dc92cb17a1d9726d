"""Interactive subprocess driver.

A ``ManagedProcess`` continuously buffers stdout and stderr from the moment it
is spawned. Scenario steps register one predicate at a time with
``wait_for_output``; it is evaluated against the text each channel produced
since that channel last matched, and the first channel to satisfy it wins.
A match consumes the text of the matching channel only; output already
buffered on the other channel stays available to the next step.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Literal, TypeAlias

from loguru import logger

from cliharness.errors import (
    CommandFailedError,
    ProcessExitedError,
    ProtocolViolationError,
    SpawnError,
    WriteError,
)
from cliharness.formatting import command_line

CHUNK_SIZE = 65536
DEFAULT_TERMINATE_GRACE_SECONDS = 5.0

ChannelName: TypeAlias = Literal["stdout", "stderr"]
Predicate: TypeAlias = Callable[[str], bool]


@dataclass(frozen=True)
class SpawnOptions:
    """Execution options of one invocation."""

    cwd: str | Path | None = None
    env: Mapping[str, str] | None = None
    input: str | None = None
    inherit_stdin: bool = False
    reject: bool = False
    encoding: str = "utf-8"

    def __post_init__(self) -> None:
        if self.inherit_stdin and self.input is not None:
            raise ValueError("input cannot be piped when stdin is inherited")


@dataclass(frozen=True)
class ProcessResult:
    args: list[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class PromptMatch:
    """The channel that satisfied a wait and the text it was matched on."""

    channel: ChannelName
    text: str


@dataclass
class _OutputChannel:
    name: ChannelName
    encoding: str
    eof: bool = False
    _parts: list[str] = field(default_factory=list)
    _pending: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")

    def feed(self, data: bytes) -> str:
        return self._append(self._decoder.decode(data))

    def close(self) -> str:
        self.eof = True
        return self._append(self._decoder.decode(b"", final=True))

    def consume(self) -> str:
        text = self.pending
        self._pending.clear()
        return text

    @property
    def pending(self) -> str:
        return _joined(self._pending)

    @property
    def text(self) -> str:
        return _joined(self._parts)

    def _append(self, text: str) -> str:
        if text:
            self._parts.append(text)
            self._pending.append(text)
        return text


def _joined(parts: list[str]) -> str:
    # Collapses in place; a later read only joins chunks appended since.
    if len(parts) > 1:
        parts[:] = ["".join(parts)]
    return parts[0] if parts else ""


class ManagedProcess:
    """Owned handle to one spawned subprocess."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        args: list[str],
        options: SpawnOptions,
    ) -> None:
        self._process = process
        self._options = options
        self.args = args
        self._channels: dict[ChannelName, _OutputChannel] = {
            "stdout": _OutputChannel("stdout", options.encoding),
            "stderr": _OutputChannel("stderr", options.encoding),
        }
        self._predicate: Predicate | None = None
        self._waiter: asyncio.Future[PromptMatch] | None = None
        self._result: ProcessResult | None = None
        self._supervisor = asyncio.create_task(self._supervise())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exited(self) -> bool:
        return self._result is not None

    @property
    def stdout(self) -> str:
        return self._channels["stdout"].text

    @property
    def stderr(self) -> str:
        return self._channels["stderr"].text

    async def __aenter__(self) -> ManagedProcess:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self.exited:
            await self.terminate()

    async def wait_for_output(self, predicate: Predicate) -> PromptMatch:
        """Wait until either channel's unconsumed text satisfies ``predicate``.

        Raises:
            ProtocolViolationError: another wait is still pending.
            ProcessExitedError: the process ended without a match.
        """
        if self._waiter is not None:
            raise ProtocolViolationError("a wait_for_output call is already pending on this process")

        for channel in self._channels.values():
            if channel.pending and predicate(channel.pending):
                return self._consume(channel)

        if self._result is not None:
            raise ProcessExitedError(self._result.exit_code, self._pending_text())

        waiter: asyncio.Future[PromptMatch] = asyncio.get_running_loop().create_future()
        self._waiter = waiter
        self._predicate = predicate
        try:
            return await waiter
        finally:
            if self._waiter is waiter:
                self._waiter = None
                self._predicate = None

    async def send(self, text: str) -> None:
        """Write ``text`` to the process input."""
        stdin = self._process.stdin
        if stdin is None:
            raise WriteError("stdin is inherited, nothing can be written to it")
        if self._result is not None or stdin.is_closing():
            raise WriteError("input channel is closed")
        try:
            stdin.write(text.encode(self._options.encoding))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise WriteError(f"input channel is closed: {exc!s}") from exc
        logger.debug("process.send pid={} text={!r}", self.pid, text)

    async def finish(self) -> ProcessResult:
        """Wait for the process to exit and return everything it printed.

        Raises:
            CommandFailedError: ``reject`` was set and the exit code is non-zero.
        """
        result = await asyncio.shield(self._supervisor)
        if self._options.reject and not result.ok:
            raise CommandFailedError(result)
        return result

    async def terminate(self, grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> ProcessResult:
        """Stop a running process, killing it if it ignores SIGTERM."""
        if self._result is None and self._process.returncode is None:
            logger.debug("process.terminate pid={}", self.pid)
            with contextlib.suppress(ProcessLookupError):
                self._process.terminate()
            try:
                async with asyncio.timeout(grace_seconds):
                    await asyncio.shield(self._supervisor)
            except TimeoutError:
                logger.warning("process.kill pid={}", self.pid)
                with contextlib.suppress(ProcessLookupError):
                    self._process.kill()
        return await asyncio.shield(self._supervisor)

    async def _write_initial_input(self, text: str) -> None:
        stdin = self._process.stdin
        assert stdin is not None
        try:
            stdin.write(text.encode(self._options.encoding))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The process may legitimately exit without reading its input.
            logger.debug("process.input.unread pid={}", self.pid)
        finally:
            stdin.close()

    async def _supervise(self) -> ProcessResult:
        await asyncio.gather(self._pump("stdout"), self._pump("stderr"))
        exit_code = await self._process.wait()
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        self._result = ProcessResult(
            args=self.args,
            exit_code=exit_code,
            stdout=self.stdout,
            stderr=self.stderr,
        )
        logger.debug("process.exit pid={} code={}", self.pid, exit_code)
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(ProcessExitedError(exit_code, self._pending_text()))
        self._waiter = None
        self._predicate = None
        return self._result

    async def _pump(self, name: ChannelName) -> None:
        stream = self._process.stdout if name == "stdout" else self._process.stderr
        channel = self._channels[name]
        assert stream is not None
        while chunk := await stream.read(CHUNK_SIZE):
            if channel.feed(chunk):
                self._evaluate(channel)
        if channel.close():
            self._evaluate(channel)

    def _evaluate(self, channel: _OutputChannel) -> None:
        waiter, predicate = self._waiter, self._predicate
        if waiter is None or predicate is None or waiter.done():
            return
        try:
            matched = predicate(channel.pending)
        except Exception as exc:
            self._waiter = None
            self._predicate = None
            waiter.set_exception(exc)
            return
        if matched:
            waiter.set_result(self._consume(channel))

    def _consume(self, channel: _OutputChannel) -> PromptMatch:
        match = PromptMatch(channel=channel.name, text=channel.consume())
        self._waiter = None
        self._predicate = None
        logger.debug("process.matched pid={} channel={}", self.pid, channel.name)
        return match

    def _pending_text(self) -> str:
        return "".join(channel.pending for channel in self._channels.values())


async def spawn(
    executable: str | Path,
    args: Sequence[str] = (),
    options: SpawnOptions | None = None,
) -> ManagedProcess:
    """Start ``executable`` with piped output channels.

    Raises:
        SpawnError: the executable could not be launched.
    """
    options = options or SpawnOptions()
    argv = [str(executable), *(str(arg) for arg in args)]
    env = None if options.env is None else {**os.environ, **options.env}
    logger.info("{}", command_line(Path(executable).name, argv[1:]))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=options.cwd,
            env=env,
            stdin=None if options.inherit_stdin else asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise SpawnError(f"cannot launch {executable}: {exc!s}") from exc

    managed = ManagedProcess(process, argv, options)
    if options.input is not None:
        await managed._write_initial_input(options.input)
    return managed


async def run(
    executable: str | Path,
    args: Sequence[str] = (),
    options: SpawnOptions | None = None,
) -> ProcessResult:
    """Run a non-interactive invocation to completion."""
    process = await spawn(executable, args, options)
    return await process.finish()


async def wait_for_output(process: ManagedProcess, predicate: Predicate) -> PromptMatch:
    return await process.wait_for_output(predicate)


async def send(process: ManagedProcess, text: str) -> None:
    await process.send(text)


async def finish(process: ManagedProcess) -> ProcessResult:
    return await process.finish()


async def terminate(process: ManagedProcess) -> ProcessResult:
    return await process.terminate()


def contains(text: str) -> Predicate:
    """Predicate matching output that includes ``text``."""
    return lambda output: text in output


def ends_with(text: str) -> Predicate:
    return lambda output: output.endswith(text)


def matches(pattern: str | re.Pattern[str]) -> Predicate:
    """Predicate matching output where ``pattern`` is found anywhere."""
    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
    return lambda output: compiled.search(output) is not None
