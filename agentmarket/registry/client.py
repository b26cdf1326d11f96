"""
Registry client for AgentMarket
Validates search input before it reaches the catalog store
"""

import re
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Protocol

import structlog

from agentmarket.amounts import parse_price
from agentmarket.errors import InputValidationError
from agentmarket.models import ServiceDescriptor, ServiceFilter

logger = structlog.get_logger()

# Lowercase kebab-case, e.g. "sentiment-analysis"
CAPABILITY_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


class RegistryStore(Protocol):
    """Catalog persistence the client reads from"""

    async def search(self, filter: ServiceFilter) -> List[ServiceDescriptor]:
        ...

    async def get_by_id(self, service_id: str) -> Optional[ServiceDescriptor]:
        ...


def validate_capabilities(capabilities: Optional[Iterable[str]]) -> List[str]:
    if capabilities is None:
        return []
    if isinstance(capabilities, str):
        capabilities = [capabilities]

    validated = []
    for capability in capabilities:
        if not isinstance(capability, str) or not CAPABILITY_PATTERN.match(capability):
            raise InputValidationError(
                f"Invalid capability: {capability!r}. Use lowercase kebab-case, e.g. 'sentiment-analysis'",
                field="capabilities",
            )
        validated.append(capability)
    return validated


def validate_rating(min_rating: Any) -> Optional[float]:
    if min_rating is None:
        return None
    if isinstance(min_rating, bool) or not isinstance(min_rating, (int, float, Decimal)):
        raise InputValidationError(f"Invalid min_rating: {min_rating!r}", field="min_rating")
    if not 0 <= min_rating <= 5:
        raise InputValidationError("min_rating must be between 0 and 5", field="min_rating")
    return float(min_rating)


class RegistryClient:
    """
    Read-only view of the service catalog.

    Store errors propagate unchanged; callers decide how to surface an outage.
    """

    def __init__(self, store: RegistryStore):
        self.store = store

    async def search(
        self,
        capabilities: Optional[Iterable[str]] = None,
        max_price: Any = None,
        min_rating: Any = None,
    ) -> List[ServiceDescriptor]:
        """
        Find services matching every given criterion.

        Args:
            capabilities: Capability tags; a service needs at least one of them
            max_price: Highest acceptable price ("$0.05", "0.05" or a number)
            min_rating: Lowest acceptable rating, 0-5

        Returns:
            Matching services in registry order
        """
        filter = ServiceFilter(
            capabilities=validate_capabilities(capabilities),
            max_price=parse_price(max_price, field="max_price") if max_price is not None else None,
            min_rating=validate_rating(min_rating),
        )

        services = await self.store.search(filter)

        logger.info(
            "registry_search",
            capabilities=filter.capabilities,
            max_price=str(filter.max_price) if filter.max_price is not None else None,
            min_rating=filter.min_rating,
            results=len(services),
        )
        return services

    async def get(self, service_id: str) -> Optional[ServiceDescriptor]:
        """Get a single service by ID"""
        if not service_id:
            raise InputValidationError("service_id is required", field="service_id")
        return await self.store.get_by_id(service_id)
