"""Unit tests for engine (execute_request, RequestExecutor, create_client)."""

from __future__ import annotations

import asyncio

import httpx
import orjson
from conftest import BASE_URL, make_client, make_context

from imsload.engine import CORRELATION_HEADER, RequestExecutor, create_client, execute_request, response_json
from imsload.models import Op, Timeouts, WorkflowRequest


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_execute_request_success() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = orjson.loads(request.content)
        return httpx.Response(201, json={"ok": True})

    async def go():
        async with _client(handler) as client:
            req = WorkflowRequest("POST", "/api/v1/trades", Op.SUBMIT_TRADE, body={"q": 1}, params={"a": "b"})
            return await execute_request(client, req, BASE_URL, {}, 1000, iteration=3)

    sample, response = asyncio.run(go())
    assert sample.success is True
    assert sample.status_code == 201
    assert sample.operation == Op.SUBMIT_TRADE
    assert sample.iteration == 3
    assert sample.duration_ms >= 0
    assert response is not None
    assert seen["url"] == BASE_URL + "/api/v1/trades?a=b"
    assert seen["body"] == {"q": 1}


def test_execute_request_http_error_status() -> None:
    async def go():
        async with _client(lambda r: httpx.Response(500)) as client:
            return await execute_request(client, WorkflowRequest("GET", "/x", "op"), BASE_URL, {}, 1000)

    sample, response = asyncio.run(go())
    assert sample.success is False
    assert sample.status_code == 500
    assert sample.timed_out is False
    assert response is not None


def test_execute_request_timeout_never_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def go():
        async with _client(handler) as client:
            return await execute_request(client, WorkflowRequest("GET", "/x", "op"), BASE_URL, {}, 5000)

    sample, response = asyncio.run(go())
    assert response is None
    assert sample.timed_out is True
    assert sample.status_code is None
    assert "5000ms" in sample.error


def test_execute_request_connection_error_never_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def go():
        async with _client(handler) as client:
            return await execute_request(client, WorkflowRequest("GET", "/x", "op"), BASE_URL, {}, 1000)

    sample, response = asyncio.run(go())
    assert response is None
    assert sample.success is False
    assert sample.timed_out is False
    assert "refused" in sample.error


def test_executor_adds_headers_and_emits(fake_ims, environment, reference, fast_settings) -> None:
    async def go():
        async with make_client(fake_ims) as client:
            ctx = make_context(environment, reference, fast_settings)
            await ctx.session.login(client)
            queue: asyncio.Queue = asyncio.Queue()
            ex = RequestExecutor(client, ctx, Timeouts(), queue)
            sample, _ = await ex.send(WorkflowRequest("GET", "/api/v1/system/health", Op.SYSTEM_HEALTH), 9)
            return sample, queue.get_nowait()

    sample, emitted = asyncio.run(go())
    assert emitted is sample
    assert fake_ims.auth_headers == ["Bearer tok-1"]


def test_executor_sets_correlation_id(environment, reference, fast_settings) -> None:
    ids: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/login"):
            return httpx.Response(200, json={"access_token": "t"})
        ids.append(request.headers[CORRELATION_HEADER])
        return httpx.Response(200)

    async def go():
        async with _client(handler) as client:
            ctx = make_context(environment, reference, fast_settings)
            ex = RequestExecutor(client, ctx, Timeouts(), asyncio.Queue())
            await ex.send_batch([WorkflowRequest("GET", "/a", "op"), WorkflowRequest("GET", "/b", "op")])

    asyncio.run(go())
    assert len(ids) == 2
    assert ids[0] != ids[1]


def test_unauthorized_invalidates_session(fake_ims, environment, reference, fast_settings) -> None:
    fake_ims.fail_paths["/api/v1/positions"] = 401

    async def go():
        async with make_client(fake_ims) as client:
            ctx = make_context(environment, reference, fast_settings)
            await ctx.session.login(client)
            ex = RequestExecutor(client, ctx, Timeouts(), asyncio.Queue())
            await ex.send(WorkflowRequest("GET", "/api/v1/positions", Op.CALCULATE_POSITION))
            assert ctx.session.needs_refresh() is True
            await ex.send(WorkflowRequest("GET", "/api/v1/system/health", Op.SYSTEM_HEALTH))

    asyncio.run(go())
    assert fake_ims.logins == 2
    assert fake_ims.auth_headers[-1] == "Bearer tok-2"


def test_response_json() -> None:
    assert response_json(None) is None
    assert response_json(httpx.Response(200, content=b"not json")) is None
    assert response_json(httpx.Response(204)) is None
    assert response_json(httpx.Response(200, json={"a": 1})) == {"a": 1}


def test_create_client_with_transport() -> None:
    async def go():
        client = await create_client(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        async with client:
            r = await client.get("http://x/")
            return r.status_code

    assert asyncio.run(go()) == 200
