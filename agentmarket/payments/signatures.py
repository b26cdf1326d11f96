"""
Payment proof syntax checks, run before any on-chain lookup
"""

import re

from agentmarket.errors import InputValidationError

EVM_TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
SOLANA_SIGNATURE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")


def is_solana(network: str) -> bool:
    return network.lower().startswith("solana")


def validate_signature(signature: str, network: str) -> str:
    """
    Check that ``signature`` is well-formed for ``network``.

    EVM networks expect a 0x-prefixed 32-byte transaction hash, Solana a
    base58 signature of 64-88 characters.
    """
    if not isinstance(signature, str) or not signature.strip():
        raise InputValidationError("Payment signature is required", field="signature")

    signature = signature.strip()
    if is_solana(network):
        if not SOLANA_SIGNATURE_PATTERN.match(signature):
            raise InputValidationError(
                "Invalid Solana transaction signature: expected base58, 64-88 characters",
                field="signature",
            )
    elif not EVM_TX_HASH_PATTERN.match(signature):
        raise InputValidationError(
            "Invalid transaction hash: expected 0x followed by 64 hex characters",
            field="signature",
        )
    return signature
