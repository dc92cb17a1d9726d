"""Web checks composed from the retry and polling primitives."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib import error as urllib_error
from urllib import request as urllib_request

from loguru import logger

from cliharness.config import DEFAULT_NOT_READY_SENTINEL
from cliharness.polling import Check, CheckResult, is_server_error, poll_until_ready
from cliharness.retry import RetryPolicy, retry

REQUEST_TIMEOUT_SECONDS = 20
USER_AGENT = "cliharness/0.1"
DEPLOYMENT_POLL_INTERVAL_SECONDS = 2
DEPLOYMENT_POLL_DEADLINE_SECONDS = 240


class HttpStatusError(Exception):
    """Raised inside retried reads when the response is not 2xx."""

    def __init__(self, url: str, status: int) -> None:
        self.url = url
        self.status = status
        super().__init__(f"Failed to fetch {url}, received status {status}")


@dataclass(frozen=True)
class HttpResponse:
    url: str
    status: int
    body: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body)


class _NoRedirect(urllib_request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001, ANN201
        return None


def _build_headers(headers: Mapping[str, str] | None, bearer_token: str | None) -> dict[str, str]:
    merged = {"User-Agent": USER_AGENT}
    if bearer_token:
        merged["Authorization"] = f"Bearer {bearer_token}"
    merged.update(headers or {})
    return merged


def _read(response: Any, url: str, status: int) -> HttpResponse:
    charset = response.headers.get_content_charset() or "utf-8"
    body = response.read().decode(charset, errors="replace")
    return HttpResponse(url=url, status=status, body=body, headers=dict(response.headers.items()))


def _fetch_sync(url: str, headers: dict[str, str], follow_redirects: bool, timeout: float) -> HttpResponse:
    request = urllib_request.Request(url, headers=headers)  # noqa: S310 - callers pass http(s) URLs.
    opener = urllib_request.build_opener() if follow_redirects else urllib_request.build_opener(_NoRedirect)
    try:
        with opener.open(request, timeout=timeout) as response:
            return _read(response, response.geturl(), response.status)
    except urllib_error.HTTPError as exc:
        with exc:
            return _read(exc, url, exc.code)


async def fetch(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    bearer_token: str | None = None,
    follow_redirects: bool = True,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> HttpResponse:
    """GET ``url``; error statuses are returned, connection failures raise ``OSError``."""
    merged = _build_headers(headers, bearer_token)
    response = await asyncio.to_thread(_fetch_sync, url, merged, follow_redirects, timeout)
    logger.debug("http.get url={} status={}", url, response.status)
    return response


async def fetch_json_field(
    url: str,
    key: str,
    *,
    policy: RetryPolicy | None = None,
    headers: Mapping[str, str] | None = None,
    bearer_token: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> Any:
    """Fetch a JSON document and return one top-level field, retrying failed reads."""

    async def attempt() -> Any:
        response = await fetch(url, headers=headers, bearer_token=bearer_token, timeout=timeout)
        if not response.ok:
            raise HttpStatusError(url, response.status)
        data = response.json()
        if not isinstance(data, dict) or key not in data:
            raise KeyError(f"{url} response has no field {key!r}")
        return data[key]

    return await retry(attempt, policy)


async def fetch_token(
    url: str, *, policy: RetryPolicy | None = None, timeout: float = REQUEST_TIMEOUT_SECONDS
) -> str:
    return str(await fetch_json_field(url, "token", policy=policy, timeout=timeout))


async def fetch_user(
    api_base: str,
    token: str,
    *,
    policy: RetryPolicy | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    user = await fetch_json_field(
        f"{api_base.rstrip('/')}/www/user", "user", policy=policy, bearer_token=token, timeout=timeout
    )
    if not isinstance(user, dict):
        raise TypeError(f"unexpected user payload: {user!r}")
    return user


def deployment_check(
    url: str, *, sentinel: str = DEFAULT_NOT_READY_SENTINEL, timeout: float = REQUEST_TIMEOUT_SECONDS
) -> Check:
    """Readiness check: 200 and a body without the still-building ``sentinel``."""

    async def check() -> CheckResult:
        response = await fetch(url, follow_redirects=False, timeout=timeout)
        ready = response.status == 200 and sentinel not in response.body
        return CheckResult(status=response.status, body=response.body, ready=ready)

    return check


async def wait_for_deployment(
    url: str,
    *,
    interval: float = DEPLOYMENT_POLL_INTERVAL_SECONDS,
    deadline: float = DEPLOYMENT_POLL_DEADLINE_SECONDS,
    sentinel: str = DEFAULT_NOT_READY_SENTINEL,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> CheckResult:
    """Poll ``url`` until the deployment serves content; 5xx fails at once."""
    logger.info("deployment.wait url={}", url)
    return await poll_until_ready(
        deployment_check(url, sentinel=sentinel, timeout=timeout),
        interval=interval,
        deadline=deadline,
        is_instant_failure=is_server_error,
    )


async def wait_for_ok(
    url: str, *, policy: RetryPolicy | None = None, timeout: float = REQUEST_TIMEOUT_SECONDS
) -> HttpResponse:
    """Retry ``url`` until it answers 2xx, e.g. while an alias propagates."""

    async def attempt() -> HttpResponse:
        response = await fetch(url, timeout=timeout)
        if not response.ok:
            raise HttpStatusError(url, response.status)
        return response

    return await retry(attempt, policy)
