"""
Storage backends for AgentMarket
"""

from agentmarket.database.client import DatabaseClient, get_db_client
from agentmarket.database.memory import InMemoryDatabase, summarize_spending

__all__ = ["DatabaseClient", "get_db_client", "InMemoryDatabase", "summarize_spending"]
