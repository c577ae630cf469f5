"""Request body builders. Randomized from the TestContext with a per-run random.Random."""

from __future__ import annotations

import random
import uuid
from datetime import date, datetime, timezone
from typing import Any

from .models import TestContext

QUANTITY_STEP = 100
MIN_QUANTITY = 1_000
LOCATE_TYPES = ("SHORT", "BORROW")
SWAP_CASH = ("CASH", "SWAP")
ORDER_SIDES = ("SHORT_SELL", "LONG_SELL")
TRADE_SIDES = ("BUY", "SELL")
# Inventory calculation types queried together by the inventory scenario
INVENTORY_TYPES = ("for-loan", "for-pledge", "locate")


def business_date(today: date | None = None) -> str:
    return (today or datetime.now(timezone.utc).date()).isoformat()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def random_quantity(rng: random.Random, max_quantity: int = 50_000, min_quantity: int = MIN_QUANTITY) -> int:
    """Random quantity in [min, max], rounded to lots of 100."""
    q = rng.randint(min_quantity, max_quantity)
    return max(min_quantity, round(q / QUANTITY_STEP) * QUANTITY_STEP)


def pick(rng: random.Random, items: tuple[dict[str, Any], ...]) -> dict[str, Any]:
    return items[rng.randrange(len(items))]


def locate_request(
    ctx: TestContext,
    rng: random.Random,
    security_id: str | None = None,
    client_id: str | None = None,
    quantity: int | None = None,
    max_quantity: int = 50_000,
) -> dict[str, Any]:
    return {
        "securityId": security_id or pick(rng, ctx.securities)["id"],
        "clientId": client_id or pick(rng, ctx.counterparties)["id"],
        "requestorId": f"PERF-{uuid.uuid4().hex[:8]}",
        "aggregationUnitId": pick(rng, ctx.aggregation_units)["id"],
        "locateType": rng.choice(LOCATE_TYPES),
        "quantity": quantity if quantity is not None else random_quantity(rng, max_quantity),
        "swapCashIndicator": rng.choice(SWAP_CASH),
        "requestTimestamp": now_iso(),
    }


def order_validation_request(ctx: TestContext, rng: random.Random, max_quantity: int = 50_000) -> dict[str, Any]:
    security = pick(rng, ctx.securities)
    return {
        "orderId": f"ORD-{uuid.uuid4().hex[:12]}",
        "securityId": security["id"],
        "clientId": pick(rng, ctx.counterparties)["id"],
        "aggregationUnitId": pick(rng, ctx.aggregation_units)["id"],
        "orderType": rng.choice(ORDER_SIDES),
        "quantity": random_quantity(rng, max_quantity),
        "price": _jitter_price(rng, security),
        "orderDate": business_date(),
    }


def trade_request(
    ctx: TestContext, rng: random.Random, security_id: str, book_id: str, max_quantity: int = 50_000
) -> dict[str, Any]:
    security = next((s for s in ctx.securities if s["id"] == security_id), ctx.securities[0])
    return {
        "tradeId": f"TRD-{uuid.uuid4().hex[:12]}",
        "securityId": security_id,
        "bookId": book_id,
        "counterpartyId": pick(rng, ctx.counterparties)["id"],
        "side": rng.choice(TRADE_SIDES),
        "quantity": random_quantity(rng, max_quantity),
        "price": _jitter_price(rng, security),
        "tradeDate": business_date(),
        "settlementDate": business_date(),
    }


def market_data_update(rng: random.Random, security: dict[str, Any]) -> dict[str, Any]:
    return {
        "securityId": security["id"],
        "price": _jitter_price(rng, security),
        "currency": security.get("currency", "USD"),
        "source": rng.choice(("BLOOMBERG", "REUTERS", "INTERNAL")),
        "timestamp": now_iso(),
    }


def security_update(rng: random.Random, security: dict[str, Any]) -> dict[str, Any]:
    return {
        **security,
        "status": "ACTIVE",
        "lastPrice": _jitter_price(rng, security),
        "updatedAt": now_iso(),
    }


def counterparty_update(rng: random.Random, counterparty: dict[str, Any]) -> dict[str, Any]:
    return {
        **counterparty,
        "status": "ACTIVE",
        "creditRating": rng.choice(("AAA", "AA", "A", "BBB")),
        "updatedAt": now_iso(),
    }


def _jitter_price(rng: random.Random, security: dict[str, Any]) -> float:
    base = float(security.get("price") or 100.0)
    return round(base * rng.uniform(0.98, 1.02), 4)
