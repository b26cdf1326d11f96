"""
Service registry access
"""

from agentmarket.registry.client import RegistryClient, RegistryStore

__all__ = ["RegistryClient", "RegistryStore"]
