"""
Item-store workload: a read-heavy / write-light mix against a cached item API.

The service under test exposes:

    GET  /items/{id}              -> {"item": {...}, "dbFetchCount": n, "cacheFetchCount": n, "message": str}
    PUT  /items/{id}              -> {"id": ..., "name": ..., "description": ...}
    POST /items/reset-counters    -> empty

Reads report whether the item came from the cache or from the database; the
read iteration records that as `cache_hit_rate`. Writes replace an item with a
random name and verify that the name is echoed back.
"""

from __future__ import annotations

import logging
import random
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..benchmarking.engine.context import IterationContext
from ..benchmarking.metrics.registry import MetricHandle
from ..errors import CheckFailure, TransportFailure
from ..transport.http import HttpResponse

logger = logging.getLogger(__name__)

MAX_ITEM_ID = 1001
READ_PAUSE_S = 0.01
WRITE_PAUSE_S = 0.05

READ_REQUEST_DURATION = "read_request_duration"
WRITE_REQUEST_DURATION = "write_request_duration"
READ_FAILURE_RATE = "read_failure_rate"
WRITE_FAILURE_RATE = "write_failure_rate"
CACHE_HIT_RATE = "cache_hit_rate"

_CACHE_MESSAGE = "Retrieved from cache"
_UPSTREAM_MESSAGE = "Retrieved from database"


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class Item(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None


class ItemUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    description: str = "Load test update"

    @classmethod
    def random(cls) -> "ItemUpdate":
        return cls(name=f"Item_Updated_by_loadbench_{uuid.uuid4().hex}")


class ItemSource(str, Enum):
    cache = "cache"
    upstream = "upstream"


class ItemReadResponse(BaseModel):
    """GET /items/{id} body. `source` is derived from the service's message."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    item: Item
    db_fetch_count: int = Field(0, alias="dbFetchCount")
    cache_fetch_count: int = Field(0, alias="cacheFetchCount")
    message: str = ""
    source: Optional[ItemSource] = None

    @model_validator(mode="after")
    def _derive_source(self) -> "ItemReadResponse":
        if self.source is None:
            if self.message == _CACHE_MESSAGE:
                self.source = ItemSource.cache
            elif self.message == _UPSTREAM_MESSAGE:
                self.source = ItemSource.upstream
        return self

    @property
    def from_cache(self) -> bool:
        return self.source is ItemSource.cache


def random_item_id(rng: Optional[random.Random] = None) -> int:
    return (rng or random).randint(1, MAX_ITEM_ID)


def _parse(model: Any, resp: HttpResponse) -> Any:
    try:
        return model.model_validate(resp.json())
    except (ValueError, ValidationError) as e:
        logger.debug(f"Unexpected body from {resp.method} {resp.url}: {e}")
        return None


def _record_failed_request(error: TransportFailure, duration: MetricHandle) -> None:
    # Errored and timed-out requests still count towards request latency.
    if error.duration_ms is not None:
        duration.add(error.duration_ms)


# ---------------------------------------------------------------------------
# Iterations
# ---------------------------------------------------------------------------


async def read_item(ctx: IterationContext) -> None:
    """GET a random item and record latency, failure and cache-hit rates."""
    metrics = ctx.metrics
    item_id = random_item_id()
    try:
        resp = await ctx.get(f"/items/{item_id}")
    except TransportFailure as e:
        _record_failed_request(e, metrics.trend(READ_REQUEST_DURATION))
        metrics.rate(READ_FAILURE_RATE).add(True)
        metrics.rate(CACHE_HIT_RATE).add(False)
        await ctx.sleep(READ_PAUSE_S)
        raise

    ok = ctx.check(resp, {"GET status is 200": lambda r: r.status == 200})
    metrics.trend(READ_REQUEST_DURATION).add(resp.duration_ms)
    metrics.rate(READ_FAILURE_RATE).add(not ok)

    body = _parse(ItemReadResponse, resp) if ok else None
    metrics.rate(CACHE_HIT_RATE).add(body is not None and body.from_cache)

    await ctx.sleep(READ_PAUSE_S)
    if not ok:
        raise CheckFailure(f"GET /items/{item_id} returned {resp.status}", ["GET status is 200"])


async def write_item(ctx: IterationContext) -> None:
    """PUT a random name on a random item and check that it is echoed back."""
    metrics = ctx.metrics
    item_id = random_item_id()
    update = ItemUpdate.random()
    try:
        resp = await ctx.put(f"/items/{item_id}", json=update.model_dump())
    except TransportFailure as e:
        _record_failed_request(e, metrics.trend(WRITE_REQUEST_DURATION))
        metrics.rate(WRITE_FAILURE_RATE).add(True)
        await ctx.sleep(WRITE_PAUSE_S)
        raise

    checks = {
        "PUT status is 200": lambda r: r.status == 200,
        "PUT response has new name": lambda r: _parse(Item, r).name == update.name,
    }
    failed = [name for name, predicate in checks.items() if not ctx.check(resp, {name: predicate})]
    metrics.trend(WRITE_REQUEST_DURATION).add(resp.duration_ms)
    metrics.rate(WRITE_FAILURE_RATE).add(bool(failed))

    await ctx.sleep(WRITE_PAUSE_S)
    if failed:
        raise CheckFailure(f"PUT /items/{item_id} failed checks: {', '.join(failed)}", failed)


async def reset_counters(ctx: IterationContext) -> Dict[str, Any]:
    """Setup hook: zero the service's fetch counters before traffic starts."""
    resp = await ctx.post("/items/reset-counters")
    if not resp.ok:
        raise CheckFailure(f"reset-counters returned {resp.status}", ["reset-counters status"])
    logger.info("Service fetch counters reset")
    return {"reset_status": resp.status}
