import httpx
import pytest

from loadbench_core.benchmarking.metrics import MetricRegistry
from loadbench_core.errors import TransportFailure
from loadbench_core.transport.http import HttpTransport


def _transport(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://svc")
    return HttpTransport("http://svc/", client=client)


@pytest.mark.asyncio
async def test_request_returns_response_and_records_http_metrics():
    def handler(request):
        assert request.method == "PUT"
        assert request.url.path == "/items/7"
        return httpx.Response(200, json={"id": 7, "name": "x"})

    reg = MetricRegistry()
    metrics = reg.scoped(scenario="write_scenario")
    async with _transport(handler) as http:
        resp = await http.put("/items/7", json={"name": "x"}, metrics=metrics)

    assert resp.status == 200
    assert resp.ok
    assert resp.json() == {"id": 7, "name": "x"}
    assert resp.url == "http://svc/items/7"
    assert resp.duration_ms >= 0

    tags = {"scenario": "write_scenario", "method": "PUT", "status": "200"}
    assert reg.select("http_reqs", tags).values()["count"] == 1
    assert reg.select("http_req_duration", tags).count == 1
    assert reg.select("http_req_failed", tags).rate == 0.0


@pytest.mark.asyncio
async def test_error_status_counts_as_failed_request_without_raising():
    reg = MetricRegistry()
    async with _transport(lambda request: httpx.Response(500, text="boom")) as http:
        resp = await http.get("items/1", metrics=reg.scoped(scenario="s"))

    assert resp.status == 500
    assert not resp.ok
    assert resp.body == "boom"
    assert reg.select("http_req_failed", {"status": "500"}).rate == 1.0


@pytest.mark.asyncio
async def test_connection_error_becomes_transport_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    reg = MetricRegistry()
    async with _transport(handler) as http:
        with pytest.raises(TransportFailure) as info:
            await http.get("/items/1", metrics=reg.scoped(scenario="s"), tags={"name": "get-item"})

    assert info.value.method == "GET"
    assert info.value.url == "http://svc/items/1"
    assert info.value.duration_ms is not None and info.value.duration_ms >= 0
    failed = reg.select("http_req_failed", {"status": "0", "name": "get-item"})
    assert failed.rate == 1.0
    assert reg.select("http_reqs").values()["count"] == 1


@pytest.mark.asyncio
async def test_requests_without_metrics_are_not_recorded():
    reg = MetricRegistry()
    async with _transport(lambda request: httpx.Response(204)) as http:
        resp = await http.post("/items/reset-counters")
    assert resp.status == 204
    assert not reg.select("http_reqs").has_data
