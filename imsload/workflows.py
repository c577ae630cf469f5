"""Workflow scenarios: the six business choreographies driven against the API.

Each scenario is an async function taking an Iteration. It returns nothing;
its only effects are the samples emitted by the executor and the outcomes
recorded by the check engine. Causally dependent calls are sequential;
independent reads go out as one concurrent batch.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from . import payloads
from .checks import INVENTORY_SHAPE, LOCATE_SHAPE, OK_STATUSES, ORDER_SHAPE, POSITION_SHAPE, CheckEngine
from .engine import RequestExecutor, response_json
from .models import Op, ProfileSettings, ScenarioKind, TestContext, WorkflowRequest
from .scheduler import in_spike_phase

ACCEPTED_STATUSES = frozenset({200, 201, 202})
NO_CONTENT_STATUSES = frozenset({200, 201, 202, 204})
# Probability that the mixed scenario includes each step
MIXED_STEP_PROBABILITY = {
    ScenarioKind.POSITION: 0.8,
    ScenarioKind.INVENTORY: 0.6,
    ScenarioKind.LOCATE: 0.7,
    ScenarioKind.SHORT_SELL: 0.8,
    ScenarioKind.DATA_INGESTION: 0.3,
}
RECALCULATE_POSITION_PROBABILITY = 0.3
RECALCULATE_INVENTORY_PROBABILITY = 0.2
SEEDED_POSITION_PROBABILITY = 0.5


@dataclass(slots=True)
class WorkflowRuntime:
    """Per-run collaborators shared by every iteration."""

    context: TestContext
    executor: RequestExecutor
    checks: CheckEngine
    settings: ProfileSettings
    rng: random.Random
    elapsed: Callable[[], float]
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


class Iteration:
    """One scenario iteration: sends tagged requests, runs checks, pauses."""

    __slots__ = ("runtime", "number", "scenario")

    def __init__(self, runtime: WorkflowRuntime, number: int, scenario: ScenarioKind) -> None:
        self.runtime = runtime
        self.number = number
        self.scenario = scenario

    @property
    def ctx(self) -> TestContext:
        return self.runtime.context

    @property
    def rng(self) -> random.Random:
        return self.runtime.rng

    @property
    def checks(self) -> CheckEngine:
        return self.runtime.checks

    @property
    def settings(self) -> ProfileSettings:
        return self.runtime.settings

    async def think(self, scale: float = 1.0) -> None:
        """Random pause within the profile's bounds; shorter during spike phases."""
        tt = self.settings.think_time
        factor = tt.spike_factor if in_spike_phase(self.settings.load, self.runtime.elapsed()) else 1.0
        delay = self.rng.uniform(tt.min_seconds, tt.max_seconds) * factor * scale
        if delay > 0:
            await self.runtime.sleep(delay)

    async def settle(self) -> None:
        """Bounded wait for a write to become visible before re-querying."""
        if self.settings.settle_seconds > 0:
            await self.runtime.sleep(self.settings.settle_seconds)

    def request(self, method: str, path: str, operation: str, **kwargs: Any) -> WorkflowRequest:
        return WorkflowRequest(method, path, operation, workflow=self.scenario.value, **kwargs)

    async def call(
        self,
        req: WorkflowRequest,
        expected_status: frozenset[int] = OK_STATUSES,
        name: str | None = None,
    ) -> tuple[bool, Any]:
        """Send and verify one request. Returns (functional success, parsed body or None)."""
        sample, response = await self.runtime.executor.send(req, self.number)
        ok = self.checks.verify(sample, expected_status, name=name)
        return ok, response_json(response) if ok else None

    async def batch(
        self,
        reqs: list[WorkflowRequest],
        name: str,
        expected_status: frozenset[int] = OK_STATUSES,
    ) -> list[tuple[bool, Any]]:
        """Concurrent independent requests, each checked on its own plus a batch success-rate check."""
        sent = await self.runtime.executor.send_batch(reqs, self.number)
        out = []
        for sample, response in sent:
            ok = self.checks.verify(sample, expected_status)
            out.append((ok, response_json(response) if ok else None))
        self.checks.verify_batch(name, (ok for ok, _ in out), self.settings.batch_success_threshold)
        return out


def _quantity(body: Any, field: str) -> float | None:
    v = body.get(field) if isinstance(body, dict) else None
    return float(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else None


async def _for_loan_available(it: Iteration, security_id: str) -> float | None:
    ok, inv = await it.call(
        it.request(
            "GET", "/api/v1/inventory/for-loan", Op.CALCULATE_INVENTORY,
            params={"securityId": security_id, "businessDate": payloads.business_date()},
        )
    )
    if not ok or not it.checks.verify_shape("inventory for-loan response", inv, *INVENTORY_SHAPE):
        return None
    return _quantity(inv, "availableQuantity")


async def _submit_locate(it: Iteration, body: dict[str, Any]) -> dict[str, Any] | None:
    ok, loc = await it.call(it.request("POST", "/api/v1/locates", Op.SUBMIT_LOCATE, body=body))
    if not ok or not it.checks.verify_shape("locate response", loc, *LOCATE_SHAPE):
        return None
    return loc


async def locate_workflow(
    it: Iteration,
    security_id: str | None = None,
    client_id: str | None = None,
    quantity: int | None = None,
) -> str | None:
    """Submit a locate, poll its status, and on approval check the for-loan decrement.

    Returns the final locate status, or None when a step failed.
    """
    body = payloads.locate_request(it.ctx, it.rng, security_id, client_id, quantity, it.settings.max_quantity)
    before = await _for_loan_available(it, body["securityId"])

    loc = await _submit_locate(it, body)
    if loc is None:
        return None
    status = loc["status"]
    request_id = loc["requestId"]
    for _ in range(max(1, it.settings.locate_poll_attempts)):
        await it.think(0.5)
        ok, polled = await it.call(it.request("GET", f"/api/v1/locates/{request_id}", Op.CHECK_LOCATE_STATUS))
        if not ok or not it.checks.verify_shape("locate status response", polled, *LOCATE_SHAPE):
            return None
        status = polled["status"]
        if status != "PENDING":
            break

    if status == "APPROVED" and before is not None:
        after = await _for_loan_available(it, body["securityId"])
        if after is not None:
            it.checks.verify_consistency("for-loan inventory decreased after approved locate", after < before)
    return status


async def short_sell_workflow(it: Iteration) -> str | None:
    """Order validation (hard SLA, never retried), then limit state on approval."""
    body = payloads.order_validation_request(it.ctx, it.rng, it.settings.max_quantity)
    ok, resp = await it.call(
        WorkflowRequest(
            "POST", "/api/v1/orders/validate", Op.VALIDATE_ORDER,
            body=body, workflow="shortSellValidation",
        )
    )
    if not ok or not it.checks.verify_shape("order validation response", resp, *ORDER_SHAPE):
        return None
    if resp["status"] != "APPROVED":
        return resp["status"]

    await it.think(0.5)
    security_id = body["securityId"]
    au_id = resp.get("aggregationUnitId") or body["aggregationUnitId"]
    await it.batch(
        [
            it.request("GET", f"/api/v1/limits/client/{body['clientId']}", Op.CHECK_CLIENT_LIMIT,
                       params={"securityId": security_id}),
            it.request("GET", f"/api/v1/limits/aggregation-unit/{au_id}", Op.CHECK_AU_LIMIT,
                       params={"securityId": security_id}),
        ],
        name="limit state after approval",
    )
    return "APPROVED"


async def position_workflow(it: Iteration) -> None:
    """Query a position, trade against it, re-query after a bounded wait, then the settlement ladder."""
    ctx, rng = it.ctx, it.rng
    if ctx.positions and rng.random() < SEEDED_POSITION_PROBABILITY:
        seeded = payloads.pick(rng, ctx.positions)
        security_id, book_id = seeded["securityId"], seeded["bookId"]
    else:
        security_id = payloads.pick(rng, ctx.securities)["id"]
        book_id = payloads.pick(rng, ctx.books)["id"]
    params = {"securityId": security_id, "bookId": book_id, "businessDate": payloads.business_date()}

    ok, before = await it.call(it.request("GET", "/api/v1/positions", Op.CALCULATE_POSITION, params=params))
    before_qty = None
    if ok and it.checks.verify_shape("position response", before, *POSITION_SHAPE):
        before_qty = _quantity(before, "quantity")

    await it.think()
    trade = payloads.trade_request(ctx, rng, security_id, book_id, it.settings.max_quantity)
    ok, _ = await it.call(it.request("POST", "/api/v1/trades", Op.SUBMIT_TRADE, body=trade), ACCEPTED_STATUSES)
    if ok:
        if rng.random() < RECALCULATE_POSITION_PROBABILITY:
            await it.call(
                it.request("POST", "/api/v1/positions/calculate", Op.RECALCULATE_POSITION, body=params),
                ACCEPTED_STATUSES,
            )
        await it.settle()
        ok, after = await it.call(it.request("GET", "/api/v1/positions", Op.CALCULATE_POSITION, params=params))
        if ok and it.checks.verify_shape("position response", after, *POSITION_SHAPE) and before_qty is not None:
            after_qty = _quantity(after, "quantity")
            it.checks.verify_consistency("position changed after trade", after_qty is not None and after_qty != before_qty)

    await it.think(0.5)
    await it.call(it.request("GET", "/api/v1/positions/settlement-ladder", Op.SETTLEMENT_LADDER, params=params))


async def inventory_workflow(it: Iteration) -> None:
    """Query several calculation types at once, submit a locate, re-query for-loan."""
    ctx, rng = it.ctx, it.rng
    security_id = payloads.pick(rng, ctx.securities)["id"]
    date = payloads.business_date()
    results = await it.batch(
        [
            it.request("GET", f"/api/v1/inventory/{kind}", Op.CALCULATE_INVENTORY,
                       params={"securityId": security_id, "businessDate": date})
            for kind in payloads.INVENTORY_TYPES
        ],
        name="inventory calculation types",
    )
    before = None
    for kind, (ok, body) in zip(payloads.INVENTORY_TYPES, results):
        if ok and it.checks.verify_shape(f"inventory {kind} response", body, *INVENTORY_SHAPE) and kind == "for-loan":
            before = _quantity(body, "availableQuantity")

    await it.think()
    loc = await _submit_locate(it, payloads.locate_request(ctx, rng, security_id=security_id,
                                                           max_quantity=it.settings.max_quantity))
    if loc is None:
        return

    if rng.random() < RECALCULATE_INVENTORY_PROBABILITY:
        await it.call(
            it.request("POST", "/api/v1/inventory/calculate", Op.CALCULATE_INVENTORY,
                       body={"securityId": security_id, "calculationType": "FOR_LOAN", "businessDate": date}),
            ACCEPTED_STATUSES,
        )
    await it.settle()
    after = await _for_loan_available(it, security_id)
    if loc["status"] == "APPROVED" and before is not None and after is not None:
        it.checks.verify_consistency("for-loan inventory decreased after approved locate", after < before)


async def data_ingestion_workflow(it: Iteration) -> None:
    """Reference-data update, market data (single, concurrent batch or bulk prices), read-back."""
    ctx, rng = it.ctx, it.rng
    if rng.random() < 0.5:
        entity = payloads.pick(rng, ctx.securities)
        path = f"/api/v1/securities/{entity['id']}"
        update = payloads.security_update(rng, entity)
    else:
        entity = payloads.pick(rng, ctx.counterparties)
        path = f"/api/v1/counterparties/{entity['id']}"
        update = payloads.counterparty_update(rng, entity)
    ok_update, _ = await it.call(it.request("PUT", path, Op.UPDATE_REFERENCE_DATA, body=update), NO_CONTENT_STATUSES)

    await it.think(0.5)
    mode = rng.random()
    size = it.settings.market_data_batch_size
    securities = [payloads.pick(rng, ctx.securities) for _ in range(size)]
    if mode < 1 / 3:
        await it.call(
            it.request("POST", "/api/v1/market-data", Op.SUBMIT_MARKET_DATA,
                       body=payloads.market_data_update(rng, securities[0])),
            ACCEPTED_STATUSES,
        )
    elif mode < 2 / 3:
        await it.batch(
            [
                it.request("POST", "/api/v1/market-data", Op.SUBMIT_MARKET_DATA,
                           body=payloads.market_data_update(rng, s))
                for s in securities
            ],
            name="market data batch",
            expected_status=ACCEPTED_STATUSES,
        )
    else:
        await it.call(
            it.request("POST", "/api/v1/market-data/prices", Op.SUBMIT_MARKET_DATA_BATCH,
                       body={"prices": [payloads.market_data_update(rng, s) for s in securities]}),
            ACCEPTED_STATUSES,
        )

    if ok_update:
        await it.settle()
        ok, body = await it.call(it.request("GET", path, Op.VERIFY_INGESTION))
        if ok:
            it.checks.verify_consistency(
                "reference data readable after update",
                isinstance(body, dict) and body.get("id") == entity["id"],
            )


async def mixed_workflow(it: Iteration) -> None:
    """Several workflows in one iteration, each included with its own probability."""
    rng = it.rng
    steps = [kind for kind, p in MIXED_STEP_PROBABILITY.items() if rng.random() < p]
    if not steps:
        steps = [ScenarioKind.SHORT_SELL]
    for i, kind in enumerate(steps):
        if i:
            await it.think()
        await _COMPOSABLE[kind](it)


_COMPOSABLE: dict[ScenarioKind, Callable[[Iteration], Awaitable[Any]]] = {
    ScenarioKind.LOCATE: locate_workflow,
    ScenarioKind.SHORT_SELL: short_sell_workflow,
    ScenarioKind.POSITION: position_workflow,
    ScenarioKind.INVENTORY: inventory_workflow,
    ScenarioKind.DATA_INGESTION: data_ingestion_workflow,
}

SCENARIO_HANDLERS: dict[ScenarioKind, Callable[[Iteration], Awaitable[Any]]] = {
    **_COMPOSABLE,
    ScenarioKind.MIXED: mixed_workflow,
}
assert set(SCENARIO_HANDLERS) == set(ScenarioKind), "every ScenarioKind needs a handler"


async def run_scenario(kind: ScenarioKind, it: Iteration) -> None:
    await SCENARIO_HANDLERS[kind](it)
