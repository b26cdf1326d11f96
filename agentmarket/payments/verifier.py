"""
On-chain payment verification for x402 proofs
Checks an ERC-20 Transfer in the transaction receipt against the instruction
"""

import asyncio
from collections import OrderedDict
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog
from web3 import Web3
from web3.exceptions import TransactionNotFound

from agentmarket.models import PaymentInstruction
from agentmarket.payments.models import VerificationResult
from agentmarket.payments.signatures import is_solana

logger = structlog.get_logger()

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


class PaymentVerifier(Protocol):
    async def verify_payment(self, signature: str, instruction: PaymentInstruction) -> VerificationResult:
        ...


class EvmPaymentVerifier:
    """
    Verifies USDC payments on EVM chains through web3.

    Definitive results are cached per proof and instruction, so repeated
    verification is idempotent. The cache keeps the most recent
    ``max_cache_entries`` results. RPC failures propagate to the caller.
    """

    def __init__(
        self,
        w3: Web3,
        token_addresses: Optional[Dict[str, str]] = None,
        max_cache_entries: int = 10_000,
    ):
        self.w3 = w3
        self.token_addresses = {k.upper(): v for k, v in (token_addresses or {}).items()}
        self.max_cache_entries = max_cache_entries
        self._cache: "OrderedDict[Tuple[str, str, str, int, str], VerificationResult]" = OrderedDict()

    @classmethod
    def from_rpc_url(cls, rpc_url: str, token_addresses: Optional[Dict[str, str]] = None) -> "EvmPaymentVerifier":
        return cls(Web3(Web3.HTTPProvider(rpc_url)), token_addresses)

    def _token_contract(self, token: str) -> Optional[str]:
        if token.startswith("0x"):
            return token
        return self.token_addresses.get(token.upper())

    async def verify_payment(self, signature: str, instruction: PaymentInstruction) -> VerificationResult:
        if is_solana(instruction.network):
            return VerificationResult(verified=False, error="Unsupported network")

        key = (
            signature.lower(),
            instruction.network,
            instruction.recipient.lower(),
            instruction.amount,
            instruction.token.lower(),
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            result = await asyncio.to_thread(self._verify_sync, signature, instruction)
        except TransactionNotFound:
            # May still be pending, so not cached
            return VerificationResult(verified=False, error="Transaction not found", tx_hash=signature)

        self._cache[key] = result
        while len(self._cache) > self.max_cache_entries:
            self._cache.popitem(last=False)
        logger.info(
            "payment_verified" if result.verified else "payment_verification_rejected",
            tx_hash=signature,
            error=result.error,
        )
        return result

    def _verify_sync(self, signature: str, instruction: PaymentInstruction) -> VerificationResult:
        contract = self._token_contract(instruction.token)
        if contract is None:
            return VerificationResult(verified=False, error=f"Unknown token: {instruction.token}", tx_hash=signature)

        receipt = self.w3.eth.get_transaction_receipt(signature)
        block_number = receipt.get("blockNumber")

        if receipt.get("status") != 1:
            return VerificationResult(
                verified=False, error="Transaction failed on-chain", tx_hash=signature, block_number=block_number
            )

        recipient = instruction.recipient.lower()
        for log in receipt.get("logs", []):
            if str(log["address"]).lower() != contract.lower():
                continue
            topics = log.get("topics", [])
            if len(topics) < 3 or _as_bytes(topics[0]).hex() != TRANSFER_TOPIC:
                continue

            to_address = Web3.to_checksum_address(_as_bytes(topics[2])[-20:])
            value = int.from_bytes(_as_bytes(log["data"]), "big")

            if to_address.lower() == recipient and value == instruction.amount:
                return VerificationResult(
                    verified=True, tx_hash=signature, block_number=block_number, amount=value
                )

        return VerificationResult(
            verified=False,
            error="No matching token transfer to recipient",
            tx_hash=signature,
            block_number=block_number,
        )
