"""Item-store workload against an in-memory fake of the item service."""

import json

import httpx
import pytest

from loadbench_core.benchmarking.engine import Engine, IterationContext
from loadbench_core.benchmarking.metrics import MetricRegistry
from loadbench_core.config import ExhaustionPolicy, build_run_config
from loadbench_core.errors import CheckFailure, TransportFailure
from loadbench_core.transport.http import HttpTransport
from loadbench_core.workloads import available_workloads, load_workload
from loadbench_core.workloads.item_store import (
    CACHE_HIT_RATE,
    READ_FAILURE_RATE,
    WRITE_FAILURE_RATE,
    ItemReadResponse,
    ItemSource,
    read_item,
    reset_counters,
    write_item,
)


class FakeItemService:
    """Mimics the item API: the first read of an id misses, later reads hit the cache."""

    def __init__(self, put_echoes_name=True, read_status=200):
        self.cached = set()
        self.resets = 0
        self.put_echoes_name = put_echoes_name
        self.read_status = read_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/items/reset-counters":
            self.resets += 1
            return httpx.Response(200)
        item_id = int(path.rsplit("/", 1)[-1])
        if request.method == "GET":
            if self.read_status != 200:
                return httpx.Response(self.read_status)
            hit = item_id in self.cached
            self.cached.add(item_id)
            return httpx.Response(
                200,
                json={
                    "item": {"id": item_id, "name": f"Item {item_id}", "description": "d"},
                    "dbFetchCount": 0 if hit else 1,
                    "cacheFetchCount": 1 if hit else 0,
                    "message": "Retrieved from cache" if hit else "Retrieved from database",
                },
            )
        if request.method == "PUT":
            body = json.loads(request.content)
            self.cached.discard(item_id)
            name = body["name"] if self.put_echoes_name else "stale"
            return httpx.Response(
                200, json={"id": item_id, "name": name, "description": body["description"]}
            )
        return httpx.Response(405)


def _transport(service):
    client = httpx.AsyncClient(transport=httpx.MockTransport(service), base_url="http://items")
    return HttpTransport("http://items", client=client)


def _ctx(registry, transport, scenario="read_scenario"):
    return IterationContext(
        scenario=scenario,
        iteration=1,
        vu=1,
        metrics=registry.scoped(scenario=scenario),
        http=transport,
    )


def test_read_response_derives_source_from_message():
    body = {
        "item": {"id": 1, "name": "a", "description": "b"},
        "dbFetchCount": 3,
        "cacheFetchCount": 9,
        "message": "Retrieved from cache",
    }
    parsed = ItemReadResponse.model_validate(body)
    assert parsed.source is ItemSource.cache
    assert parsed.from_cache
    assert parsed.cache_fetch_count == 9

    body["message"] = "Retrieved from database"
    assert ItemReadResponse.model_validate(body).source is ItemSource.upstream

    body["message"] = "something else"
    assert ItemReadResponse.model_validate(body).source is None


@pytest.mark.asyncio
async def test_read_item_records_cache_hits(monkeypatch):
    monkeypatch.setattr("loadbench_core.workloads.item_store.random_item_id", lambda: 42)
    reg = MetricRegistry()
    async with _transport(FakeItemService()) as http:
        ctx = _ctx(reg, http)
        await read_item(ctx)  # miss
        await read_item(ctx)  # hit

    assert reg.select(READ_FAILURE_RATE).rate == 0.0
    assert reg.select(CACHE_HIT_RATE, {"scenario": "read_scenario"}).rate == 0.5
    assert reg.select("read_request_duration").count == 2
    assert reg.select("checks", {"check": "GET status is 200"}).rate == 1.0


@pytest.mark.asyncio
async def test_read_item_error_status_is_a_check_failure():
    reg = MetricRegistry()
    async with _transport(FakeItemService(read_status=503)) as http:
        with pytest.raises(CheckFailure):
            await read_item(_ctx(reg, http))

    assert reg.select(READ_FAILURE_RATE).rate == 1.0
    assert reg.select(CACHE_HIT_RATE).rate == 0.0


@pytest.mark.asyncio
async def test_read_item_transport_failure_records_failure_rate():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    reg = MetricRegistry()
    async with _transport(refuse) as http:
        with pytest.raises(TransportFailure):
            await read_item(_ctx(reg, http))

    assert reg.select(READ_FAILURE_RATE).rate == 1.0


@pytest.mark.asyncio
async def test_write_item_checks_echoed_name():
    reg = MetricRegistry()
    async with _transport(FakeItemService()) as http:
        await write_item(_ctx(reg, http, scenario="write_scenario"))
    assert reg.select(WRITE_FAILURE_RATE).rate == 0.0
    assert reg.select("checks", {"check": "PUT response has new name"}).rate == 1.0

    reg = MetricRegistry()
    async with _transport(FakeItemService(put_echoes_name=False)) as http:
        with pytest.raises(CheckFailure) as info:
            await write_item(_ctx(reg, http, scenario="write_scenario"))
    assert info.value.failed_checks == ["PUT response has new name"]
    assert reg.select(WRITE_FAILURE_RATE).rate == 1.0


@pytest.mark.asyncio
async def test_reset_counters_setup_hook():
    service = FakeItemService()
    async with _transport(service) as http:
        data = await reset_counters(_ctx(MetricRegistry(), http, scenario="setup"))
    assert service.resets == 1
    assert data == {"reset_status": 200}


def test_bundled_workload_matches_item_store_options():
    assert "item_store" in available_workloads()
    cfg = load_workload("item_store")

    read, write = cfg.scenarios["read_scenario"], cfg.scenarios["write_scenario"]
    assert (read.rate, read.duration, read.pre_allocated_vus, read.max_vus) == (900, 60.0, 100, 500)
    assert (write.rate, write.duration, write.pre_allocated_vus, write.max_vus) == (100, 60.0, 50, 200)
    assert read.exec_fn is read_item
    assert write.exec_fn is write_item
    assert read.exhaustion_policy is ExhaustionPolicy.DROP
    assert cfg.setup is reset_counters
    assert cfg.base_url == "http://localhost:8080"
    assert cfg.threshold_count() == 6
    assert [t.threshold for t in cfg.thresholds["cache_hit_rate{scenario:read_scenario}"]] == [
        "rate>0.5"
    ]

    overridden = load_workload("item_store", base_url="http://staging:8080")
    assert overridden.base_url == "http://staging:8080"


def test_unknown_workload_name():
    with pytest.raises(ValueError):
        load_workload("does_not_exist")


@pytest.mark.asyncio
async def test_scaled_down_item_store_run_passes_against_fake_service(monkeypatch):
    # A small id space so the cache warms up within a short run.
    monkeypatch.setattr("loadbench_core.workloads.item_store.MAX_ITEM_ID", 3)
    bundled = load_workload("item_store")
    cfg = build_run_config(
        {
            "setup": bundled.setup,
            "metrics": dict(bundled.metrics),
            "thresholds": {
                sel: [t.model_dump() for t in items] for sel, items in bundled.thresholds.items()
            },
            "scenarios": {
                "read_scenario": {"rate": 40, "duration": 0.5, "preAllocatedVUs": 5, "maxVUs": 10, "exec": read_item},
                "write_scenario": {"rate": 4, "duration": 0.5, "preAllocatedVUs": 1, "maxVUs": 2, "exec": write_item},
            },
        }
    )
    service = FakeItemService()
    async with _transport(service) as http:
        report = await Engine(cfg, transport=http).run()

    assert service.resets == 1
    assert report.passed is True, report.summary_lines()
    assert report.scenarios["read_scenario"].started == 20
    assert report.scenarios["write_scenario"].started == 2
    hit_rate = {t.selector: t.observed for t in report.thresholds}["cache_hit_rate{scenario:read_scenario}"]
    assert hit_rate > 0.5


@pytest.mark.asyncio
async def test_timed_out_requests_still_count_towards_request_duration():
    def time_out(request):
        raise httpx.ReadTimeout("timed out", request=request)

    reg = MetricRegistry()
    async with _transport(time_out) as http:
        with pytest.raises(TransportFailure) as info:
            await read_item(_ctx(reg, http))
        with pytest.raises(TransportFailure):
            await write_item(_ctx(reg, http, scenario="write_scenario"))

    assert info.value.duration_ms is not None
    read_durations = reg.select("read_request_duration")
    assert read_durations.count == 1
    assert read_durations.quantile(100) == info.value.duration_ms
    assert reg.select("write_request_duration").count == 1
    assert reg.select(READ_FAILURE_RATE).rate == 1.0
    assert reg.select(WRITE_FAILURE_RATE).rate == 1.0
