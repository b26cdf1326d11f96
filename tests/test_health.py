"""
Tests for health probing
"""

import asyncio

import httpx
import pytest

from agentmarket.health.prober import HealthProber, classify_health_body, partition_by_health
from agentmarket.models import HealthResult, HealthStatus

from tests.factories import ServiceDescriptorFactory


def respond(status_code=200, **kwargs):
    async def handle(request):
        return httpx.Response(status_code, **kwargs)
    return handle


@pytest.fixture
def prober(http_client):
    return HealthProber(http_client, timeout=0.5, max_concurrent=10)


@pytest.mark.parametrize("body,expected", [
    ({"status": "healthy"}, HealthStatus.HEALTHY),
    ({"status": "OK"}, HealthStatus.HEALTHY),
    ({"healthy": True}, HealthStatus.HEALTHY),
    ({"status": "degraded"}, HealthStatus.UNHEALTHY),
    ({"healthy": False}, HealthStatus.UNHEALTHY),
    ({"uptime": 1234}, HealthStatus.UNKNOWN),
    (["ok"], HealthStatus.UNKNOWN),
    (None, HealthStatus.UNKNOWN),
])
def test_classify_health_body(body, expected):
    assert classify_health_body(body) == expected


@pytest.mark.asyncio
async def test_probe_uses_default_health_path(prober, router):
    service = ServiceDescriptorFactory(id="alpha", endpoint="http://alpha.test/api")
    router.add("alpha.test", respond(json={"status": "healthy"}))

    result = await prober.probe(service)

    assert result.status == HealthStatus.HEALTHY
    assert result.response_time_ms is not None
    assert str(router.requests[0].url) == "http://alpha.test/api/health"


@pytest.mark.asyncio
async def test_probe_uses_declared_health_url(prober, router):
    service = ServiceDescriptorFactory(id="beta", health_check_url="http://beta.test/status")
    router.add("beta.test", respond(json={"healthy": True}))

    await prober.probe(service)

    assert router.requests[0].url.path == "/status"


@pytest.mark.asyncio
async def test_non_json_body_is_unknown(prober, router):
    service = ServiceDescriptorFactory(id="gamma")
    router.add("gamma.test", respond(text="OK"))

    result = await prober.probe(service)

    assert result.status == HealthStatus.UNKNOWN


@pytest.mark.asyncio
async def test_server_error_is_unhealthy(prober, router):
    service = ServiceDescriptorFactory(id="delta")
    router.add("delta.test", respond(503, json={"status": "healthy"}))

    result = await prober.probe(service)

    assert result.status == HealthStatus.UNHEALTHY
    assert result.error == "HTTP 503"


@pytest.mark.asyncio
async def test_unreachable_service(prober):
    service = ServiceDescriptorFactory(id="nowhere")

    result = await prober.probe(service)

    assert result.status == HealthStatus.UNHEALTHY
    assert result.error == "Service unreachable"


@pytest.mark.asyncio
async def test_timeout(prober, router):
    async def hang(request):
        raise httpx.ReadTimeout("timed out", request=request)

    service = ServiceDescriptorFactory(id="slow")
    router.add("slow.test", hang)

    result = await prober.probe(service)

    assert result.status == HealthStatus.UNHEALTHY
    assert result.error == "Health check timeout"


@pytest.mark.asyncio
async def test_unexpected_exception_is_unknown(prober, router):
    async def explode(request):
        raise RuntimeError("boom")

    service = ServiceDescriptorFactory(id="weird")
    router.add("weird.test", explode)

    result = await prober.probe(service)

    assert result.status == HealthStatus.UNKNOWN
    assert result.error == "boom"


@pytest.mark.asyncio
async def test_probe_many_respects_concurrency_ceiling(prober, router):
    in_flight = 0
    peak = 0

    async def handle(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, json={"status": "ok"})

    services = [ServiceDescriptorFactory(id=f"svc-batch-{i}") for i in range(25)]
    for service in services:
        router.add(f"{service.id}.test", handle)

    results = await prober.probe_many(services)

    assert peak <= 10
    assert len(results) == 25
    assert [r.service_id for r in results] == [s.id for s in services]
    assert all(r.status == HealthStatus.HEALTHY for r in results)


def test_partition_by_health():
    a, b, c, d = (ServiceDescriptorFactory() for _ in range(4))
    results = [
        HealthResult(service_id=a.id, status=HealthStatus.HEALTHY),
        HealthResult(service_id=b.id, status=HealthStatus.UNHEALTHY),
        HealthResult(service_id=c.id, status=HealthStatus.UNKNOWN),
    ]

    healthy, unhealthy, unknown = partition_by_health([a, b, c, d], results)

    assert healthy == [a]
    assert unhealthy == [b]
    assert unknown == [c, d]
