"""Helpers for scenario assertions on CLI output."""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from typing import Protocol
from urllib import parse as urllib_parse

SEPARATOR = "-----"


class HasOutput(Protocol):
    stdout: str
    stderr: str


def format_output(result: HasOutput) -> str:
    """Render both output channels for an assertion message."""
    return f"\n{SEPARATOR}\n\nStderr:\n{result.stderr}\n\n{SEPARATOR}\n\nStdout:\n{result.stdout}\n\n{SEPARATOR}\n"


def pick_url(stdout: str) -> str:
    """Return the last line the CLI printed, where deploy commands put the URL."""
    lines = stdout.rstrip("\r\n").split("\n")
    return lines[-1].strip()


def parse_host(url: str) -> str:
    """Return ``host[:port]`` of an absolute URL."""
    parsed = urllib_parse.urlsplit(url.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"not an absolute URL: {url!r}")
    return parsed.netloc


def host_prefix(host: str, sep: str = "-") -> str:
    """Leading segment of a generated deployment host, e.g. its project name."""
    return host.split(sep, 1)[0]


def https_url(host: str, path: str = "") -> str:
    if path and not path.startswith("/"):
        path = f"/{path}"
    return f"https://{host}{path}"


def command_line(name: str, args: Sequence[str]) -> str:
    return " ".join(["$", shlex.quote(name), *(shlex.quote(arg) for arg in args)])
