"""
Supabase database client for AgentMarket
Backs the service registry, the transaction ledger and spending limits
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError
from supabase import create_client, Client

from agentmarket.config import MarketplaceConfig
from agentmarket.database.memory import summarize_spending
from agentmarket.models import (
    ServiceDescriptor,
    ServiceFilter,
    SpendingLimits,
    SpendingStats,
    TransactionRecord,
    TransactionStatus,
)

logger = structlog.get_logger()


class DatabaseClient:
    """
    Supabase-backed store for marketplace operations

    Tables: services, transactions, spending_limits
    """

    def __init__(self, supabase_url: str, supabase_key: str):
        """Initialize Supabase client"""
        self.client: Client = create_client(supabase_url, supabase_key)

    # ===== SERVICE OPERATIONS =====

    def _parse_service(self, row: Dict[str, Any]) -> Optional[ServiceDescriptor]:
        try:
            return ServiceDescriptor.model_validate(row)
        except ValidationError as e:
            logger.warning("registry_row_invalid", service_id=row.get("id"), error=str(e))
            return None

    async def search(self, filter: ServiceFilter) -> List[ServiceDescriptor]:
        """
        Search active services
        Pricing lives in a JSON column, so price and capability matching happen here
        """
        result = self.client.table("services").select("*").order("created_at").execute()

        services = []
        for row in result.data:
            service = self._parse_service(row)
            if service is not None and filter.matches(service):
                services.append(service)
        return services

    async def get_by_id(self, service_id: str) -> Optional[ServiceDescriptor]:
        """Get service by ID"""
        result = self.client.table("services").select("*").eq("id", service_id).execute()
        return self._parse_service(result.data[0]) if result.data else None

    async def register_service(self, service: ServiceDescriptor) -> ServiceDescriptor:
        """Register or update a service listing"""
        row = service.model_dump(mode="json", by_alias=True, exclude_none=True)
        self.client.table("services").upsert(row).execute()
        return service

    # ===== TRANSACTION OPERATIONS =====

    async def insert_transaction(self, record: TransactionRecord) -> TransactionRecord:
        """Append a ledger row"""
        self.client.table("transactions").insert(record.model_dump(mode="json")).execute()
        return record

    async def list_transactions(
        self,
        buyer: Optional[str] = None,
        service_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        """Ledger rows, newest first"""
        query = self.client.table("transactions").select("*")

        if buyer:
            query = query.eq("buyer", buyer)
        if service_id:
            query = query.eq("service_id", service_id)
        if status:
            query = query.eq("status", status.value)

        query = query.order("timestamp", desc=True)
        if limit is not None:
            query = query.limit(limit)

        result = query.execute()
        return [TransactionRecord.model_validate(row) for row in result.data]

    # ===== SPENDING LIMIT OPERATIONS =====

    async def get_limits(self, identity: str) -> Optional[SpendingLimits]:
        result = self.client.table("spending_limits").select("*").eq("identity", identity).execute()
        return SpendingLimits.model_validate(result.data[0]) if result.data else None

    async def set_limits(self, limits: SpendingLimits) -> SpendingLimits:
        self.client.table("spending_limits").upsert(limits.model_dump(mode="json")).execute()
        return limits

    async def delete_limits(self, identity: str) -> bool:
        result = self.client.table("spending_limits").delete().eq("identity", identity).execute()
        return bool(result.data)

    async def get_spending_stats(self, identity: str, as_of: datetime) -> SpendingStats:
        """Completed spend for the current UTC month, bucketed by day and month"""
        now = as_of.astimezone(timezone.utc) if as_of.tzinfo else as_of.replace(tzinfo=timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        result = (
            self.client.table("transactions")
            .select("*")
            .eq("buyer", identity)
            .eq("status", TransactionStatus.COMPLETED.value)
            .gte("timestamp", month_start.isoformat())
            .execute()
        )
        records = [TransactionRecord.model_validate(row) for row in result.data]
        return summarize_spending(identity, records, now)


# Singleton instance for entry points
_db_client: Optional[DatabaseClient] = None


def get_db_client(config: MarketplaceConfig) -> DatabaseClient:
    """
    Get or create singleton database client
    Reads the Supabase URL and key from settings
    """
    global _db_client

    if _db_client is None:
        if not config.supabase_url or not config.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment.")

        _db_client = DatabaseClient(config.supabase_url, config.supabase_key)

    return _db_client
