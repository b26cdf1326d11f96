"""
Tests for service ranking
"""

import pytest

from agentmarket.models import HealthResult, HealthStatus, RankingWeights
from agentmarket.ranking import ServiceRanker

from tests.factories import ServiceDescriptorFactory


def health(service, status, rt=None):
    return HealthResult(service_id=service.id, status=status, response_time_ms=rt)


def test_score_components():
    ranker = ServiceRanker()
    service = ServiceDescriptorFactory(pricing="$2.00", reputation={"rating": 4.0})

    score = ranker.score(service, health(service, HealthStatus.HEALTHY, rt=1000))

    assert score["health"] == 1.0
    assert score["rating"] == pytest.approx(0.8)
    assert score["price"] == pytest.approx(0.8)
    assert score["latency"] == pytest.approx(0.9)
    assert score["total"] == pytest.approx(0.4 + 0.24 + 0.16 + 0.09)


def test_missing_data_scores_neutral():
    ranker = ServiceRanker()
    service = ServiceDescriptorFactory(pricing="$20", reputation={})

    score = ranker.score(service, None)

    assert score["health"] == 0.5
    assert score["rating"] == 0.5
    assert score["price"] == 0.0
    assert score["latency"] == 0.5


def test_healthy_outranks_unknown_and_unhealthy():
    ranker = ServiceRanker()
    down, unknown, up = (ServiceDescriptorFactory() for _ in range(3))
    results = [
        health(down, HealthStatus.UNHEALTHY),
        health(unknown, HealthStatus.UNKNOWN),
        health(up, HealthStatus.HEALTHY),
    ]

    assert ranker.rank([down, unknown, up], results) == [up, unknown, down]


def test_ties_keep_registry_order():
    ranker = ServiceRanker()
    services = [ServiceDescriptorFactory() for _ in range(5)]

    assert ranker.rank(services) == services
    assert ranker.rank(list(reversed(services))) == list(reversed(services))


def test_ranking_is_deterministic():
    ranker = ServiceRanker()
    services = [
        ServiceDescriptorFactory(pricing=f"${i % 3}.50", reputation={"rating": (i * 7) % 5})
        for i in range(10)
    ]
    results = {s.id: health(s, HealthStatus.HEALTHY, rt=100 * i) for i, s in enumerate(services)}

    first = ranker.rank(services, results)
    assert all(ranker.rank(services, results) == first for _ in range(5))


def test_custom_weights_change_order():
    cheap = ServiceDescriptorFactory(pricing="$0.01", reputation={"rating": 2.0})
    rated = ServiceDescriptorFactory(pricing="$5.00", reputation={"rating": 5.0})

    price_first = ServiceRanker(RankingWeights(health=0, rating=0, price=1, latency=0))
    rating_first = ServiceRanker(RankingWeights(health=0, rating=1, price=0, latency=0))

    assert price_first.rank([rated, cheap]) == [cheap, rated]
    assert rating_first.rank([cheap, rated]) == [rated, cheap]


def test_rank_with_scores_exposes_breakdown():
    ranker = ServiceRanker()
    service = ServiceDescriptorFactory()

    [(ranked, score)] = ranker.rank_with_scores([service])

    assert ranked == service
    assert set(score) == {"health", "rating", "price", "latency", "total"}


def test_rank_weights_override_per_call():
    cheap = ServiceDescriptorFactory(pricing="$0.01", reputation={"rating": 2.0})
    rated = ServiceDescriptorFactory(pricing="$5.00", reputation={"rating": 5.0})
    ranker = ServiceRanker(RankingWeights(health=0, rating=1, price=0, latency=0))

    price_first = RankingWeights(health=0, rating=0, price=1, latency=0)

    assert ranker.rank([cheap, rated]) == [rated, cheap]
    assert ranker.rank([rated, cheap], weights=price_first) == [cheap, rated]
    # The ranker's own weights are unchanged
    assert ranker.rank([cheap, rated]) == [rated, cheap]

    [(_, score)] = ranker.rank_with_scores([cheap], weights=price_first)
    assert score["total"] == pytest.approx(score["price"])
