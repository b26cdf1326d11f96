"""
Verified service execution
"""

from agentmarket.execution.engine import CompletionEngine

__all__ = ["CompletionEngine"]
