"""Request executor. Speed and minimal overhead first.

This module provides the HTTP execution path shared by all scenarios:
- execute_request: Single tagged request with timing and timeout guard
- RequestExecutor: Adds auth, correlation id and sample emission per run
- create_client: Shared async HTTP client factory

Requests are never retried: a retry would hide the latency that is being measured.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import TYPE_CHECKING, Any

import httpx
import orjson

from .auth import bearer_headers
from .models import MetricSample, Timeouts, WorkflowRequest

if TYPE_CHECKING:
    from .models import TestContext

# Tuned for throughput: high connection limits, shared client.
DEFAULT_MAX_CONNECTIONS = 1000
DEFAULT_MAX_KEEPALIVE = 200
DEFAULT_KEEPALIVE_EXPIRY = 30.0
DEFAULT_TIMEOUT_SEC = 30.0
NS_TO_MS = 1_000_000
CORRELATION_HEADER = "X-Correlation-ID"
JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
USER_AGENT = "imsload-performance-test"


def new_correlation_id() -> str:
    return str(uuid.uuid4())


async def execute_request(
    client: httpx.AsyncClient,
    req: WorkflowRequest,
    base_url: str,
    headers: dict[str, str],
    guard_ms: float,
    iteration: int = 0,
) -> tuple[MetricSample, httpx.Response | None]:
    """Execute one request and time it.

    Args:
        client: Shared async HTTP client
        req: Request with operation tag
        base_url: Environment base URL, prefixed to req.path
        headers: Auth and correlation headers
        guard_ms: Timeout guard; exceeding it yields a timed_out sample
        iteration: Iteration number recorded on the sample

    Returns:
        (sample, response); response is None on transport failure or timeout.

    Note:
        This never raises - all errors are captured in the MetricSample.
    """
    content = orjson.dumps(req.body) if req.body is not None else None
    start_ns = time.perf_counter_ns()
    try:
        r = await client.request(
            req.method,
            base_url + req.path,
            params=req.params,
            headers=headers,
            content=content,
            timeout=guard_ms / 1000.0,
        )
        elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        sample = MetricSample(
            operation=req.operation,
            method=req.method,
            path=req.path,
            status_code=r.status_code,
            duration_ms=elapsed_ms,
            success=200 <= r.status_code < 300,
            iteration=iteration,
            timestamp=start_ns / 1_000_000_000,
        )
        return sample, r
    except httpx.TimeoutException as e:
        elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        return MetricSample(
            operation=req.operation,
            method=req.method,
            path=req.path,
            status_code=None,
            duration_ms=elapsed_ms,
            success=False,
            timed_out=True,
            error=f"timeout after {guard_ms:g}ms ({type(e).__name__})",
            iteration=iteration,
            timestamp=start_ns / 1_000_000_000,
        ), None
    except Exception as e:  # noqa: BLE001
        elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        return MetricSample(
            operation=req.operation,
            method=req.method,
            path=req.path,
            status_code=None,
            duration_ms=elapsed_ms,
            success=False,
            error=str(e) or type(e).__name__,
            iteration=iteration,
            timestamp=start_ns / 1_000_000_000,
        ), None


class RequestExecutor:
    """Per-run executor: attaches token and correlation id, emits every sample to the result queue."""

    __slots__ = ("client", "context", "timeouts", "result_queue")

    def __init__(
        self,
        client: httpx.AsyncClient,
        context: TestContext,
        timeouts: Timeouts,
        result_queue: asyncio.Queue[MetricSample | None],
    ) -> None:
        self.client = client
        self.context = context
        self.timeouts = timeouts
        self.result_queue = result_queue

    async def _headers(self) -> dict[str, str]:
        token = await self.context.session.token_for_request(self.client)
        h = {**JSON_HEADERS, "User-Agent": USER_AGENT, CORRELATION_HEADER: new_correlation_id()}
        h.update(bearer_headers(token))
        return h

    async def _emit(self, sample: MetricSample) -> None:
        if not self.result_queue.full():
            self.result_queue.put_nowait(sample)
        else:
            await self.result_queue.put(sample)

    async def send(self, req: WorkflowRequest, iteration: int = 0) -> tuple[MetricSample, httpx.Response | None]:
        headers = await self._headers()
        sample, response = await execute_request(
            self.client,
            req,
            self.context.environment.base_url,
            headers,
            self.timeouts.guard_ms(req.operation),
            iteration,
        )
        if sample.status_code == 401:
            self.context.session.invalidate()
        await self._emit(sample)
        return sample, response

    async def send_batch(
        self, reqs: list[WorkflowRequest], iteration: int = 0
    ) -> list[tuple[MetricSample, httpx.Response | None]]:
        """Issue independent requests concurrently. No ordering among them."""
        return list(await asyncio.gather(*(self.send(r, iteration) for r in reqs)))


def response_json(response: httpx.Response | None) -> Any:
    """Parsed JSON body, or None when there is no response or it is not JSON."""
    if response is None or not response.content:
        return None
    try:
        return orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return None


async def create_client(
    http2: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    limits: httpx.Limits | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create shared async HTTP client.

    Uses high connection limits for throughput. Single client per run.

    Args:
        http2: Enable HTTP/2 protocol (recommended for multiplexing)
        timeout: Default request timeout in seconds (per-operation guards override it)
        limits: Custom connection limits (uses high defaults if not specified)
        transport: Custom transport (tests use httpx.MockTransport)
    """
    limits = limits or httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_keepalive_connections=DEFAULT_MAX_KEEPALIVE,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    if transport is not None:
        return httpx.AsyncClient(timeout=timeout, transport=transport)
    return httpx.AsyncClient(
        http2=http2,
        timeout=timeout,
        limits=limits,
    )
