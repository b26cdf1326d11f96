"""
Reference x402 service provider
"""

from agentmarket.provider.app import create_service_app, payment_required_response

__all__ = ["create_service_app", "payment_required_response"]
