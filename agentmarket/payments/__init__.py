"""
AgentMarket Payment Module
x402 challenge/response, spending limits and on-chain verification
"""

from agentmarket.payments.models import (
    PaymentOption,
    PaymentRequired,
    PaymentProof,
    VerificationResult,
)
from agentmarket.payments.signatures import validate_signature
from agentmarket.payments.limits import SpendingLimitGuard, SpendingLimitStore
from agentmarket.payments.negotiator import PaymentNegotiator, parse_payment_required
from agentmarket.payments.verifier import EvmPaymentVerifier, PaymentVerifier
from agentmarket.payments.wallet import EvmWallet, WalletManager

__all__ = [
    "PaymentOption",
    "PaymentRequired",
    "PaymentProof",
    "VerificationResult",
    "validate_signature",
    "SpendingLimitGuard",
    "SpendingLimitStore",
    "PaymentNegotiator",
    "parse_payment_required",
    "EvmPaymentVerifier",
    "PaymentVerifier",
    "EvmWallet",
    "WalletManager",
]
