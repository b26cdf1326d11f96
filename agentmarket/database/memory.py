"""
In-memory store for local runs and tests
Implements the registry, ledger and spending limit store interfaces
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from agentmarket.models import (
    ServiceDescriptor,
    ServiceFilter,
    SpendingLimits,
    SpendingStats,
    TransactionRecord,
    TransactionStatus,
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def summarize_spending(
    identity: str, records: Iterable[TransactionRecord], as_of: datetime
) -> SpendingStats:
    """
    Aggregate completed spend for ``identity`` into UTC day and month buckets.
    Failed and pending rows never count against a limit.
    """
    now = _as_utc(as_of)
    total_today = Decimal("0")
    total_month = Decimal("0")
    count_today = 0
    last: Optional[datetime] = None

    for record in records:
        if record.buyer != identity or record.status != TransactionStatus.COMPLETED:
            continue
        stamp = _as_utc(record.timestamp)
        if last is None or stamp > last:
            last = stamp
        if (stamp.year, stamp.month) != (now.year, now.month):
            continue
        total_month += record.amount
        if stamp.date() == now.date():
            total_today += record.amount
            count_today += 1

    return SpendingStats(
        identity=identity,
        total_today=total_today,
        total_this_month=total_month,
        transaction_count=count_today,
        last_transaction=last,
    )


class InMemoryDatabase:
    """Process-local store; insertion order is registry order"""

    def __init__(self, services: Optional[Iterable[ServiceDescriptor]] = None):
        self.services: Dict[str, ServiceDescriptor] = {}
        self.transactions: List[TransactionRecord] = []
        self.limits: Dict[str, SpendingLimits] = {}

        for service in services or []:
            self.register_service(service)

    # ===== SERVICE OPERATIONS =====

    def register_service(self, service: ServiceDescriptor) -> ServiceDescriptor:
        self.services[service.id] = service
        return service

    async def search(self, filter: ServiceFilter) -> List[ServiceDescriptor]:
        return [s for s in self.services.values() if filter.matches(s)]

    async def get_by_id(self, service_id: str) -> Optional[ServiceDescriptor]:
        return self.services.get(service_id)

    # ===== TRANSACTION OPERATIONS =====

    async def insert_transaction(self, record: TransactionRecord) -> TransactionRecord:
        self.transactions.append(record)
        return record

    async def list_transactions(
        self,
        buyer: Optional[str] = None,
        service_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        """Newest first"""
        rows = [
            r for r in reversed(self.transactions)
            if (buyer is None or r.buyer == buyer)
            and (service_id is None or r.service_id == service_id)
            and (status is None or r.status == status)
        ]
        return rows[:limit] if limit is not None else rows

    # ===== SPENDING LIMIT OPERATIONS =====

    async def get_limits(self, identity: str) -> Optional[SpendingLimits]:
        return self.limits.get(identity)

    async def set_limits(self, limits: SpendingLimits) -> SpendingLimits:
        self.limits[limits.identity] = limits
        return limits

    async def delete_limits(self, identity: str) -> bool:
        return self.limits.pop(identity, None) is not None

    async def get_spending_stats(self, identity: str, as_of: datetime) -> SpendingStats:
        return summarize_spending(identity, self.transactions, as_of)
