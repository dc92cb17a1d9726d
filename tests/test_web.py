from __future__ import annotations

import json

import pytest
from conftest import LocalHttpServer, Reply

from cliharness.errors import PollTimeoutError, RetryExhaustedError, UpstreamError
from cliharness.retry import RetryPolicy
from cliharness.web import (
    HttpStatusError,
    fetch,
    fetch_json_field,
    fetch_token,
    fetch_user,
    wait_for_deployment,
    wait_for_ok,
)

NO_DELAY = RetryPolicy(retries=3, min_delay=0)
BUILDING = "<html><head><title>Deployment Overview</title></head></html>"


@pytest.mark.asyncio
async def test_fetch_returns_error_statuses(http_server: LocalHttpServer) -> None:
    response = await fetch(http_server.url("/missing"))

    assert response.status == 404
    assert response.body == "not found"
    assert not response.ok


@pytest.mark.asyncio
async def test_fetch_sends_bearer_token(http_server: LocalHttpServer) -> None:
    http_server.route("/www/user", Reply(200, "{}"))

    await fetch(http_server.url("/www/user"), bearer_token="t0k", headers={"X-Scenario": "login"})

    headers = http_server.requests[-1].headers
    assert headers["Authorization"] == "Bearer t0k"
    assert headers["X-Scenario"] == "login"


@pytest.mark.asyncio
async def test_fetch_without_following_redirects(http_server: LocalHttpServer) -> None:
    http_server.route("/old", Reply(302, "", {"Location": "/new"}))
    http_server.route("/new", Reply(200, "moved here"))

    manual = await fetch(http_server.url("/old"), follow_redirects=False)
    followed = await fetch(http_server.url("/old"))

    assert manual.status == 302
    assert followed.status == 200
    assert followed.body == "moved here"


@pytest.mark.asyncio
async def test_fetch_json_field_retries_failed_reads(http_server: LocalHttpServer) -> None:
    http_server.route(
        "/token",
        Reply(502, "bad gateway"),
        Reply(200, "not json"),
        Reply(200, json.dumps({"token": "abc"})),
    )

    token = await fetch_token(http_server.url("/token"), policy=NO_DELAY)

    assert token == "abc"
    assert http_server.hits("/token") == 3


@pytest.mark.asyncio
async def test_fetch_json_field_gives_up(http_server: LocalHttpServer) -> None:
    http_server.route("/token", Reply(500, "down"))

    with pytest.raises(RetryExhaustedError) as exc_info:
        await fetch_json_field(http_server.url("/token"), "token", policy=NO_DELAY)

    assert http_server.hits("/token") == 4
    assert isinstance(exc_info.value.last_error, HttpStatusError)
    assert exc_info.value.last_error.status == 500


@pytest.mark.asyncio
async def test_fetch_json_field_missing_key(http_server: LocalHttpServer) -> None:
    http_server.route("/token", Reply(200, json.dumps({"error": "nope"})))

    with pytest.raises(RetryExhaustedError) as exc_info:
        await fetch_json_field(http_server.url("/token"), "token", policy=RetryPolicy(retries=1, min_delay=0))

    assert isinstance(exc_info.value.last_error, KeyError)


@pytest.mark.asyncio
async def test_fetch_user_uses_token(http_server: LocalHttpServer) -> None:
    http_server.route("/www/user", Reply(200, json.dumps({"user": {"email": "alice@example.com"}})))

    user = await fetch_user(http_server.base_url, "t0k", policy=NO_DELAY)

    assert user == {"email": "alice@example.com"}
    assert http_server.requests[-1].headers["Authorization"] == "Bearer t0k"


@pytest.mark.asyncio
async def test_wait_for_deployment_skips_building_page(http_server: LocalHttpServer) -> None:
    http_server.route("/", Reply(200, BUILDING), Reply(200, BUILDING), Reply(200, "<h1>custom hello</h1>"))

    result = await wait_for_deployment(http_server.url("/"), interval=0.01, deadline=5)

    assert result.ready
    assert "custom hello" in result.body
    assert http_server.hits("/") == 3


@pytest.mark.asyncio
async def test_wait_for_deployment_does_not_follow_redirects(http_server: LocalHttpServer) -> None:
    http_server.route("/", Reply(307, "", {"Location": "/login"}), Reply(200, "live"))
    http_server.route("/login", Reply(200, "login page"))

    result = await wait_for_deployment(http_server.url("/"), interval=0.01, deadline=5)

    assert result.body == "live"
    assert http_server.hits("/login") == 0


@pytest.mark.asyncio
async def test_wait_for_deployment_fails_on_server_error(http_server: LocalHttpServer) -> None:
    http_server.route("/", Reply(200, BUILDING), Reply(502, "bad gateway"))

    with pytest.raises(UpstreamError) as exc_info:
        await wait_for_deployment(http_server.url("/"), interval=0.01, deadline=60)

    assert exc_info.value.result.status == 502
    assert http_server.hits("/") == 2


@pytest.mark.asyncio
async def test_wait_for_deployment_times_out(http_server: LocalHttpServer) -> None:
    http_server.route("/", Reply(200, BUILDING))

    with pytest.raises(PollTimeoutError) as exc_info:
        await wait_for_deployment(http_server.url("/"), interval=0.01, deadline=0.1)

    assert exc_info.value.last_result is not None
    assert exc_info.value.last_result.status == 200


@pytest.mark.asyncio
async def test_wait_for_ok_retries_until_alias_answers(http_server: LocalHttpServer) -> None:
    http_server.route("/", Reply(404, "alias not found"), Reply(200, "alice"))

    response = await wait_for_ok(http_server.url("/"), policy=NO_DELAY)

    assert response.ok
    assert response.body == "alice"
