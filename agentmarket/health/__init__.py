"""
Service liveness checks
"""

from agentmarket.health.prober import HealthProber, classify_health_body, partition_by_health

__all__ = ["HealthProber", "classify_health_body", "partition_by_health"]
