"""
Endpoint health probing and service ranking.

probe() is the reachability gate in front of every autopay fetch: any
status below 500 proves the endpoint is alive, including 401/402.
check_service() is the stricter /health check used to rank marketplace
candidates before a purchase.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import httpx

from .discovery import ServiceCandidate

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_TIMEOUT = 5.0

HEALTH_WEIGHT = 0.4
RATING_WEIGHT = 0.3
PRICE_WEIGHT = 0.2
RESPONSE_TIME_WEIGHT = 0.1


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    url: str
    status: HealthStatus
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "status": self.status.value,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
        }


async def probe(
    client: httpx.AsyncClient,
    url: str,
    timeout: float = DEFAULT_HEALTH_TIMEOUT,
) -> HealthCheckResult:
    """HEAD the URL; healthy iff a response arrives with status < 500."""
    started = time.monotonic()
    try:
        resp = await client.head(url, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.warning("Health probe failed for %s: %s", url, exc)
        return HealthCheckResult(
            url=url,
            status=HealthStatus.UNHEALTHY,
            response_time_ms=(time.monotonic() - started) * 1000,
            error=str(exc) or exc.__class__.__name__,
        )

    elapsed = (time.monotonic() - started) * 1000
    if resp.status_code >= 500:
        return HealthCheckResult(
            url=url,
            status=HealthStatus.UNHEALTHY,
            status_code=resp.status_code,
            response_time_ms=elapsed,
            error=f"Server error {resp.status_code}",
        )
    return HealthCheckResult(
        url=url,
        status=HealthStatus.HEALTHY,
        status_code=resp.status_code,
        response_time_ms=elapsed,
    )


def _health_url(endpoint: str) -> str:
    return endpoint.rstrip("/") + "/health"


async def check_service(
    client: httpx.AsyncClient,
    service: ServiceCandidate,
    timeout: float = DEFAULT_HEALTH_TIMEOUT,
) -> HealthCheckResult:
    url = _health_url(service.endpoint)
    started = time.monotonic()
    try:
        resp = await client.get(url, timeout=timeout)
    except httpx.TimeoutException:
        return HealthCheckResult(url=url, status=HealthStatus.UNHEALTHY, error=f"Timeout after {timeout}s")
    except httpx.HTTPError as exc:
        return HealthCheckResult(url=url, status=HealthStatus.UNHEALTHY, error=str(exc) or "connection failed")

    elapsed = (time.monotonic() - started) * 1000
    if resp.status_code != 200:
        return HealthCheckResult(
            url=url,
            status=HealthStatus.UNHEALTHY,
            status_code=resp.status_code,
            response_time_ms=elapsed,
            error=f"HTTP {resp.status_code}",
        )
    try:
        body = resp.json()
    except ValueError:
        body = None
    healthy = isinstance(body, dict) and (
        body.get("status") in ("healthy", "ok") or body.get("healthy") is True
    )
    return HealthCheckResult(
        url=url,
        status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
        status_code=resp.status_code,
        response_time_ms=elapsed,
        error=None if healthy else "Health endpoint did not report healthy",
    )


async def check_services(
    client: httpx.AsyncClient,
    services: Iterable[ServiceCandidate],
    timeout: float = DEFAULT_HEALTH_TIMEOUT,
    max_concurrent: int = 10,
) -> dict[str, HealthCheckResult]:
    services = list(services)
    semaphore = asyncio.Semaphore(max_concurrent)

    async def _one(service: ServiceCandidate) -> HealthCheckResult:
        async with semaphore:
            return await check_service(client, service, timeout)

    results = await asyncio.gather(*(_one(s) for s in services))
    return {service.id: result for service, result in zip(services, results)}


def filter_healthy(
    services: Iterable[ServiceCandidate],
    results: dict[str, HealthCheckResult],
) -> list[ServiceCandidate]:
    return [s for s in services if s.id in results and results[s.id].healthy]


def score_service(service: ServiceCandidate, result: Optional[HealthCheckResult]) -> float:
    if result is None or result.status == HealthStatus.UNKNOWN:
        health = 0.5
    else:
        health = 1.0 if result.healthy else 0.0
    rating = (service.rating or 0) / 5
    price = 1 / (1 + float(service.price_usd))
    response = 0.0
    if result is not None and result.response_time_ms is not None:
        response = 1 - min(result.response_time_ms / 5000, 1)
    return (
        health * HEALTH_WEIGHT
        + rating * RATING_WEIGHT
        + price * PRICE_WEIGHT
        + response * RESPONSE_TIME_WEIGHT
    )


def rank_services(
    services: Iterable[ServiceCandidate],
    results: dict[str, HealthCheckResult],
) -> list[ServiceCandidate]:
    """Best first."""
    return sorted(services, key=lambda s: score_service(s, results.get(s.id)), reverse=True)
