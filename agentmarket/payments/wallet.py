"""
Buyer wallet access
Address derivation and ERC-20 balance reads; signing stays with the caller
"""

import asyncio
from decimal import Decimal
from typing import Dict, Optional, Protocol

from eth_account import Account
from web3 import Web3

from agentmarket.amounts import from_base_units, USDC_DECIMALS
from agentmarket.config import BuyerConfig, MarketplaceConfig
from agentmarket.errors import InputValidationError

# Minimal ERC20 ABI for balance reads
ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]


class WalletManager(Protocol):
    def get_address(self) -> str:
        ...

    async def get_balance(self, token: str = "USDC") -> Decimal:
        ...


class EvmWallet:
    """Read-only view of the buyer's EVM wallet"""

    def __init__(
        self,
        w3: Web3,
        private_key: Optional[str] = None,
        address: Optional[str] = None,
        token_addresses: Optional[Dict[str, str]] = None,
        decimals: int = USDC_DECIMALS,
    ):
        if private_key:
            self.address = Account.from_key(private_key).address
        elif address:
            self.address = Web3.to_checksum_address(address)
        else:
            raise InputValidationError("A private key or address is required", field="buyer_address")

        self.w3 = w3
        self.token_addresses = {k.upper(): v for k, v in (token_addresses or {}).items()}
        self.decimals = decimals

    @classmethod
    def from_config(cls, buyer: BuyerConfig, marketplace: MarketplaceConfig) -> "EvmWallet":
        return cls(
            Web3(Web3.HTTPProvider(marketplace.rpc_url)),
            private_key=buyer.buyer_private_key or None,
            address=buyer.buyer_address or None,
            token_addresses=marketplace.token_addresses(),
            decimals=marketplace.token_decimals,
        )

    def get_address(self) -> str:
        return self.address

    async def get_balance(self, token: str = "USDC") -> Decimal:
        """Token balance in whole units"""
        contract_address = token if token.startswith("0x") else self.token_addresses.get(token.upper())
        if not contract_address:
            raise InputValidationError(f"Unknown token: {token}", field="token")

        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=ERC20_BALANCE_ABI
        )
        raw = await asyncio.to_thread(contract.functions.balanceOf(self.address).call)
        return from_base_units(raw, self.decimals)
