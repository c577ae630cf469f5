"""Pytest fixtures for imsload tests: an in-memory IMS API behind httpx.MockTransport."""

from __future__ import annotations

import itertools
from collections import Counter, defaultdict
from dataclasses import replace
from typing import Any

import httpx
import orjson
import pytest

from imsload.auth import SessionAuthenticator
from imsload.environments import Environment
from imsload.models import LoadProfile, ProfileSettings, ThinkTime
from imsload.profiles import get_profile
from imsload.reference_data import build_test_context, load_reference_data

BASE_URL = "http://ims.test"
AUTH_URL = BASE_URL + "/api/v1/auth/login"
DEFAULT_FOR_LOAN = 1_000_000
DEFAULT_POSITION = 10_000


def _json(status: int, body: Any = None) -> httpx.Response:
    if body is None:
        return httpx.Response(status)
    return httpx.Response(status, content=orjson.dumps(body), headers={"Content-Type": "application/json"})


class FakeIms:
    """Stateful stand-in for the IMS API.

    Locates come back PENDING and resolve on the first status poll; an
    approval decrements the security's for-loan availability. Trades move
    the position. Paths listed in fail_paths return that status instead.
    """

    def __init__(self, locate_outcome: str = "APPROVED", order_outcome: str = "APPROVED") -> None:
        self.locate_outcome = locate_outcome
        self.order_outcome = order_outcome
        self.for_loan: dict[str, int] = defaultdict(lambda: DEFAULT_FOR_LOAN)
        self.positions: dict[tuple[str, str], int] = defaultdict(lambda: DEFAULT_POSITION)
        self.locates: dict[str, dict[str, Any]] = {}
        self.reference: dict[str, dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self.auth_headers: list[str | None] = []
        self.fail_paths: dict[str, int] = {}
        self.timeout_paths: set[str] = set()
        self.login_status = 200
        self.logins = 0
        self.logouts = 0
        self.health = {"cpuUtilization": 40.0, "memoryUtilization": 50.0, "connectionPoolUtilization": 20.0}
        self._ids = itertools.count(1)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls[(method, path)] += 1
        if path == "/api/v1/auth/login":
            if self.login_status != 200:
                return _json(self.login_status, {"error": "invalid_client"})
            self.logins += 1
            return _json(200, {"access_token": f"tok-{self.logins}", "expires_in": 3600})
        if path == "/api/v1/auth/logout":
            self.logouts += 1
            return httpx.Response(204)
        self.auth_headers.append(request.headers.get("Authorization"))
        if path in self.timeout_paths:
            raise httpx.ReadTimeout("timed out", request=request)
        if path in self.fail_paths:
            return _json(self.fail_paths[path], {"error": "injected"})
        body = orjson.loads(request.content) if request.content else None
        params = request.url.params
        return self._route(method, path, body, params)

    def _route(self, method: str, path: str, body: Any, params: httpx.QueryParams) -> httpx.Response:
        parts = path.strip("/").split("/")[2:]
        head = parts[0] if parts else ""

        if head == "locates":
            if method == "POST":
                rid = f"LOC-{next(self._ids)}"
                loc = {
                    "requestId": rid,
                    "status": "PENDING",
                    "securityId": body["securityId"],
                    "quantity": body["quantity"],
                    "clientId": body["clientId"],
                }
                self.locates[rid] = loc
                return _json(201, loc)
            loc = self.locates.get(parts[1])
            if loc is None:
                return _json(404, {"error": "not found"})
            if loc["status"] == "PENDING":
                loc["status"] = self.locate_outcome
                if loc["status"] == "APPROVED":
                    self.for_loan[loc["securityId"]] -= loc["quantity"]
            return _json(200, loc)

        if head == "inventory":
            if method == "POST":
                return _json(202, {"accepted": True})
            kind = parts[1]
            security_id = params.get("securityId")
            available = self.for_loan[security_id] if kind == "for-loan" else 500_000
            return _json(200, {
                "securityId": security_id,
                "availableQuantity": available,
                "calculationType": kind.upper().replace("-", "_"),
            })

        if head == "orders":
            return _json(200, {
                "orderId": body["orderId"],
                "status": self.order_outcome,
                "clientLimit": {"remaining": 1_000_000},
                "aggregationUnitLimit": {"remaining": 5_000_000},
                "aggregationUnitId": body["aggregationUnitId"],
            })

        if head == "limits":
            return _json(200, {"id": parts[-1], "remaining": 1_000_000})

        if head == "positions":
            if len(parts) > 1 and parts[1] == "calculate":
                return _json(202, {"accepted": True})
            if len(parts) > 1 and parts[1] == "settlement-ladder":
                return _json(200, {"securityId": params.get("securityId"), "ladder": []})
            key = (params.get("securityId"), params.get("bookId"))
            return _json(200, {"securityId": key[0], "bookId": key[1], "quantity": self.positions[key]})

        if head == "trades":
            key = (body["securityId"], body["bookId"])
            delta = body["quantity"] if body["side"] == "BUY" else -body["quantity"]
            self.positions[key] += delta
            return _json(201, {"tradeId": body["tradeId"], "status": "BOOKED"})

        if head in ("securities", "counterparties"):
            if method == "PUT":
                self.reference[path] = body
                return _json(200, body)
            stored = self.reference.get(path)
            return _json(200, stored) if stored else _json(404, {"error": "not found"})

        if head == "market-data":
            return _json(202, {"accepted": True})

        if head == "system" and parts[1:] == ["health"]:
            return _json(200, {"status": "UP", **self.health})

        return _json(404, {"error": f"no route for {method} {path}"})


@pytest.fixture
def fake_ims() -> FakeIms:
    return FakeIms()


@pytest.fixture
def environment() -> Environment:
    return Environment(name="local", base_url=BASE_URL, auth_url=AUTH_URL, username="perf", password="secret")


@pytest.fixture
def reference():
    return load_reference_data()


@pytest.fixture
def fast_settings() -> ProfileSettings:
    """Normal profile with no pauses and a short, low-rate shape."""
    base = get_profile("normal")
    return replace(
        base,
        load=LoadProfile.constant(20.0, 0.5, preallocated_workers=5, max_workers=20),
        think_time=ThinkTime(0.0, 0.0, 1.0),
        settle_seconds=0.0,
    )


def make_client(handler: FakeIms) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_context(environment: Environment, reference, settings: ProfileSettings):
    return build_test_context(environment, SessionAuthenticator(environment), reference, settings.weights)
