"""
AgentMarket - service marketplace core for autonomous agents
Discovery, health checks, x402 payments and verified completion
"""

__version__ = "0.1.0"
