"""Tests for SessionAuthenticator (login, refresh, invalidate, logout)."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from conftest import FakeIms, make_client

from imsload.auth import EXPIRY_MARGIN_SEC, SessionAuthenticator, bearer_headers
from imsload.exceptions import ImsLoadAuthError


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_bearer_headers() -> None:
    assert bearer_headers("abc") == {"Authorization": "Bearer abc"}
    assert bearer_headers(None) == {}


def test_login_stores_token(fake_ims, environment) -> None:
    async def go():
        async with make_client(fake_ims) as client:
            session = SessionAuthenticator(environment)
            token = await session.login(client)
            return session, token

    session, token = asyncio.run(go())
    assert token == "tok-1"
    assert session.token == "tok-1"
    assert session.logins == 1
    assert session.needs_refresh() is False


def test_login_failure_raises(environment) -> None:
    fake = FakeIms()
    fake.login_status = 401

    async def go():
        async with make_client(fake) as client:
            await SessionAuthenticator(environment).login(client)

    with pytest.raises(ImsLoadAuthError) as exc_info:
        asyncio.run(go())
    assert exc_info.value.context["status"] == 401


def test_login_transport_error_raises(environment) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await SessionAuthenticator(environment).login(client)

    with pytest.raises(ImsLoadAuthError) as exc_info:
        asyncio.run(go())
    assert isinstance(exc_info.value.original_error, httpx.ConnectError)


def test_login_without_token_raises(environment) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"expires_in": 60})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await SessionAuthenticator(environment).login(client)

    with pytest.raises(ImsLoadAuthError):
        asyncio.run(go())


def test_refresh_before_expiry(fake_ims, environment) -> None:
    clock = Clock()

    async def go():
        async with make_client(fake_ims) as client:
            session = SessionAuthenticator(environment, clock=clock)
            await session.login(client)
            first = await session.token_for_request(client)
            clock.now = 3600 - EXPIRY_MARGIN_SEC + 1
            second = await session.token_for_request(client)
            return first, second

    first, second = asyncio.run(go())
    assert first == "tok-1"
    assert second == "tok-2"


def test_concurrent_refresh_logs_in_once(fake_ims, environment) -> None:
    async def go():
        async with make_client(fake_ims) as client:
            session = SessionAuthenticator(environment)
            await session.login(client)
            session.invalidate()
            tokens = await asyncio.gather(*(session.token_for_request(client) for _ in range(20)))
            return set(tokens)

    assert asyncio.run(go()) == {"tok-2"}
    assert fake_ims.logins == 2


def test_failed_refresh_keeps_previous_token(fake_ims, environment) -> None:
    async def go():
        async with make_client(fake_ims) as client:
            session = SessionAuthenticator(environment)
            await session.login(client)
            session.invalidate()
            fake_ims.login_status = 500
            return await session.token_for_request(client)

    assert asyncio.run(go()) == "tok-1"


def test_logout_clears_token_and_never_raises(environment) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/login"):
            return httpx.Response(200, json={"access_token": "t"})
        raise httpx.ConnectError("gone", request=request)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            session = SessionAuthenticator(environment)
            await session.login(client)
            await session.logout(client)
            return session.token

    assert asyncio.run(go()) is None


def test_logout_calls_endpoint(fake_ims, environment) -> None:
    async def go():
        async with make_client(fake_ims) as client:
            session = SessionAuthenticator(environment)
            await session.login(client)
            await session.logout(client)

    asyncio.run(go())
    assert fake_ims.logouts == 1


def test_rejected_credentials_carry_url_status_and_hint(environment) -> None:
    fake = FakeIms()
    fake.login_status = 401

    async def go():
        async with make_client(fake) as client:
            await SessionAuthenticator(environment).login(client)

    with pytest.raises(ImsLoadAuthError) as exc_info:
        asyncio.run(go())
    err = exc_info.value
    assert err.url == environment.auth_url
    assert err.status_code == 401
    assert err.context["url"] == environment.auth_url
    assert err.context["environment"] == "local"
    assert err.credentials_rejected
    assert err.hint.startswith("Credentials were rejected")


def test_non_numeric_expires_in_raises_auth_error(environment) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "t", "expires_in": "soon"})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await SessionAuthenticator(environment).login(client)

    with pytest.raises(ImsLoadAuthError) as exc_info:
        asyncio.run(go())
    assert "expires_in" in exc_info.value.message
    assert isinstance(exc_info.value.original_error, ValueError)
    assert exc_info.value.status_code == 200


def test_refresh_with_bad_expires_in_keeps_previous_token(environment) -> None:
    responses = iter([{"access_token": "first", "expires_in": 3600}, {"access_token": "second", "expires_in": "soon"}])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=next(responses))

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            session = SessionAuthenticator(environment)
            await session.login(client)
            session.invalidate()
            return await session.token_for_request(client), session.logins

    assert asyncio.run(go()) == ("first", 1)
