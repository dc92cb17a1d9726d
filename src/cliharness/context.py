"""Explicit per-scenario state."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from loguru import logger

from cliharness.config import HarnessSettings
from cliharness.process import ManagedProcess, ProcessResult, SpawnOptions, run, spawn
from cliharness.polling import CheckResult
from cliharness.web import HttpResponse, fetch, fetch_token, fetch_user, wait_for_deployment, wait_for_ok

_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id(length: int = 10) -> str:
    """Random lowercase tag for naming deployments created by one test run."""
    return "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(length))


@dataclass
class ScenarioContext:
    """State a scenario needs, passed in rather than read from globals.

    ``values`` carries data one scenario hands to a later one, such as the host
    of a deployment that a follow-up scenario inspects.
    """

    settings: HarnessSettings
    binary: Path
    default_args: list[str] = field(default_factory=list)
    session: str = field(default_factory=new_session_id)
    token: str | None = None
    email: str | None = None
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> ScenarioContext:
        """Build a context for the configured binary and token."""
        if settings.binary is None:
            raise ValueError("CLIHARNESS_BINARY is not configured")
        return cls(
            settings=settings,
            binary=settings.binary,
            default_args=list(settings.default_args),
            token=settings.token,
        )

    @property
    def context_name(self) -> str | None:
        """Account name derived from the email, as the CLI shows it."""
        if self.email is None:
            return None
        return self.email.split("@", 1)[0]

    def child(self) -> ScenarioContext:
        """Copy sharing credentials but owning its own ``values``."""
        return replace(self, default_args=list(self.default_args), values=dict(self.values))

    async def execute(self, *args: str, **options: Any) -> ProcessResult:
        """Run the binary to completion, default arguments first."""
        return await run(self.binary, [*self.default_args, *args], SpawnOptions(**options))

    async def spawn(self, *args: str, **options: Any) -> ManagedProcess:
        """Start an interactive run of the binary."""
        return await spawn(self.binary, [*self.default_args, *args], SpawnOptions(**options))

    async def authenticate(self) -> None:
        """Obtain a token and the owning user's email, retrying both reads."""
        policy = self.settings.retry_policy()
        timeout = self.settings.request_timeout_seconds
        if self.token is None:
            if not self.settings.token_url:
                raise ValueError("CLIHARNESS_TOKEN_URL is not configured")
            self.token = await fetch_token(self.settings.token_url, policy=policy, timeout=timeout)
        user = await fetch_user(self.settings.api_base, self.token, policy=policy, timeout=timeout)
        self.email = str(user["email"])
        logger.info("scenario.authenticated context={}", self.context_name)

    async def api_fetch(self, path: str, headers: dict[str, str] | None = None) -> HttpResponse:
        """GET an API path with the context token."""
        url = f"{self.settings.api_base.rstrip('/')}/{path.lstrip('/')}"
        return await fetch(
            url,
            headers=headers,
            bearer_token=self.token,
            timeout=self.settings.request_timeout_seconds,
        )

    async def api_json(self, path: str) -> Any:
        """GET an API path and parse the body as JSON."""
        response = await self.api_fetch(path)
        return response.json()

    async def wait_for_deployment(self, url: str) -> CheckResult:
        """Poll a deployment with the configured interval, deadline and sentinel."""
        return await wait_for_deployment(
            url,
            interval=self.settings.poll_interval_seconds,
            deadline=self.settings.poll_deadline_seconds,
            sentinel=self.settings.not_ready_sentinel,
            timeout=self.settings.request_timeout_seconds,
        )

    async def wait_for_ok(self, url: str) -> HttpResponse:
        """Retry ``url`` under the configured policy until it answers 2xx."""
        return await wait_for_ok(
            url, policy=self.settings.retry_policy(), timeout=self.settings.request_timeout_seconds
        )
