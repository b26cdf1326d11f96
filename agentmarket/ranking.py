"""
Service ranking
Weighted score of health, rating, price and latency
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from agentmarket.models import HealthResult, HealthStatus, RankingWeights, ServiceDescriptor

HealthResults = Union[Mapping[str, HealthResult], Iterable[HealthResult], None]

HEALTH_SCORES = {
    HealthStatus.HEALTHY: 1.0,
    HealthStatus.UNKNOWN: 0.5,
    HealthStatus.UNHEALTHY: 0.0,
}


def _index(health_results: HealthResults) -> Mapping[str, HealthResult]:
    if health_results is None:
        return {}
    if isinstance(health_results, Mapping):
        return health_results
    return {r.service_id: r for r in health_results}


class ServiceRanker:
    """Orders candidates best-first; ties keep registry order"""

    def __init__(
        self,
        weights: Optional[RankingWeights] = None,
        price_ceiling: Decimal = Decimal("10"),
        latency_ceiling_ms: float = 10000.0,
    ):
        self.weights = weights or RankingWeights()
        self.price_ceiling = Decimal(price_ceiling)
        self.latency_ceiling_ms = latency_ceiling_ms

    def score(
        self,
        service: ServiceDescriptor,
        health: Optional[HealthResult] = None,
        weights: Optional[RankingWeights] = None,
    ) -> Dict[str, float]:
        """Score components in [0, 1] plus the weighted total; ``weights`` overrides the ranker's own"""
        health_score = HEALTH_SCORES[health.status] if health else 0.5

        rating = service.reputation.rating
        rating_score = rating / 5.0 if rating is not None else 0.5

        price_score = max(0.0, 1.0 - float(service.price / self.price_ceiling))

        latency_ms = health.response_time_ms if health and health.response_time_ms is not None else None
        if latency_ms is None:
            latency_ms = service.reputation.avg_response_time_ms
        latency_score = (
            max(0.0, 1.0 - latency_ms / self.latency_ceiling_ms) if latency_ms is not None else 0.5
        )

        w = weights or self.weights
        total = (
            w.health * health_score
            + w.rating * rating_score
            + w.price * price_score
            + w.latency * latency_score
        )
        return {
            "health": health_score,
            "rating": rating_score,
            "price": price_score,
            "latency": latency_score,
            "total": total,
        }

    def rank_with_scores(
        self,
        services: Sequence[ServiceDescriptor],
        health_results: HealthResults = None,
        weights: Optional[RankingWeights] = None,
    ) -> List[Tuple[ServiceDescriptor, Dict[str, float]]]:
        health = _index(health_results)
        scored = [(s, self.score(s, health.get(s.id), weights)) for s in services]
        # sorted() is stable, reverse included
        return sorted(scored, key=lambda pair: pair[1]["total"], reverse=True)

    def rank(
        self,
        services: Sequence[ServiceDescriptor],
        health_results: HealthResults = None,
        weights: Optional[RankingWeights] = None,
    ) -> List[ServiceDescriptor]:
        return [s for s, _ in self.rank_with_scores(services, health_results, weights)]
