"""
Health prober for marketplace services
Bounded-timeout liveness checks run in fixed-size concurrent batches
"""

import asyncio
import time
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import httpx
import structlog

from agentmarket.models import HealthResult, HealthStatus, ServiceDescriptor

logger = structlog.get_logger()

HEALTHY_STATUSES = {"healthy", "ok"}


def classify_health_body(body: Any) -> HealthStatus:
    """
    Classify a 2xx health response body.

    A body that does not declare health at all is unknown rather than healthy.
    """
    if not isinstance(body, dict):
        return HealthStatus.UNKNOWN

    status = body.get("status")
    if body.get("healthy") is True or (isinstance(status, str) and status.lower() in HEALTHY_STATUSES):
        return HealthStatus.HEALTHY
    if "status" in body or "healthy" in body:
        return HealthStatus.UNHEALTHY
    return HealthStatus.UNKNOWN


class HealthProber:
    """Runs liveness probes; a probe never raises"""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        timeout: float = 5.0,
        max_concurrent: int = 10,
    ):
        self.http_client = http_client
        self.timeout = timeout
        self.max_concurrent = max_concurrent

    async def probe(self, service: ServiceDescriptor, timeout: Optional[float] = None) -> HealthResult:
        """Probe a single service's health endpoint"""
        url = service.health_url
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - start) * 1000, 2)

        try:
            response = await self.http_client.get(url, timeout=timeout or self.timeout)
        except httpx.TimeoutException:
            return HealthResult(
                service_id=service.id,
                status=HealthStatus.UNHEALTHY,
                response_time_ms=elapsed_ms(),
                error="Health check timeout",
            )
        except httpx.ConnectError:
            return HealthResult(
                service_id=service.id,
                status=HealthStatus.UNHEALTHY,
                response_time_ms=elapsed_ms(),
                error="Service unreachable",
            )
        except httpx.HTTPError as e:
            return HealthResult(
                service_id=service.id,
                status=HealthStatus.UNHEALTHY,
                response_time_ms=elapsed_ms(),
                error=str(e) or type(e).__name__,
            )
        except Exception as e:
            logger.warning("health_probe_error", service_id=service.id, url=url, error=str(e))
            return HealthResult(
                service_id=service.id,
                status=HealthStatus.UNKNOWN,
                response_time_ms=elapsed_ms(),
                error=str(e) or type(e).__name__,
            )

        response_time = elapsed_ms()

        if not response.is_success:
            return HealthResult(
                service_id=service.id,
                status=HealthStatus.UNHEALTHY,
                response_time_ms=response_time,
                error=f"HTTP {response.status_code}",
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        return HealthResult(
            service_id=service.id,
            status=classify_health_body(body),
            response_time_ms=response_time,
            details=body,
        )

    async def probe_many(
        self,
        services: Sequence[ServiceDescriptor],
        timeout: Optional[float] = None,
        max_concurrent: Optional[int] = None,
    ) -> List[HealthResult]:
        """
        Probe services in batches of at most ``max_concurrent``.

        Returns:
            One result per service, in input order
        """
        batch_size = max(1, max_concurrent or self.max_concurrent)
        results: List[HealthResult] = []

        for offset in range(0, len(services), batch_size):
            batch = services[offset:offset + batch_size]
            results.extend(await asyncio.gather(*(self.probe(s, timeout) for s in batch)))

        logger.info(
            "health_probes_completed",
            total=len(results),
            healthy=sum(1 for r in results if r.status == HealthStatus.HEALTHY),
        )
        return results


def partition_by_health(
    services: Iterable[ServiceDescriptor], results: Iterable[HealthResult]
) -> Tuple[List[ServiceDescriptor], List[ServiceDescriptor], List[ServiceDescriptor]]:
    """Split services into (healthy, unhealthy, unknown), keeping input order"""
    by_id = {r.service_id: r.status for r in results}
    healthy, unhealthy, unknown = [], [], []

    for service in services:
        status = by_id.get(service.id, HealthStatus.UNKNOWN)
        if status == HealthStatus.HEALTHY:
            healthy.append(service)
        elif status == HealthStatus.UNHEALTHY:
            unhealthy.append(service)
        else:
            unknown.append(service)
    return healthy, unhealthy, unknown
