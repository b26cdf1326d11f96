"""
x402 payment models for AgentMarket
Accepts the field spellings different x402 implementations put on the wire
"""

import base64
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class PaymentOption(BaseModel):
    """Single payment option in a 402 response"""
    model_config = ConfigDict(populate_by_name=True)

    scheme: str = Field(default="exact", description="Payment scheme")
    network: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("network", "chainId", "chain_id"),
        description="Blockchain network",
    )
    recipient: str = Field(
        validation_alias=AliasChoices("recipient", "payTo", "pay_to", "receiverAddress"),
        description="Wallet that must receive the payment",
    )
    amount: int = Field(
        ge=0,
        validation_alias=AliasChoices("amount", "maxAmountRequired", "max_amount_required"),
        description="Amount in smallest unit (USDC has 6 decimals)",
    )
    token: str = Field(
        default="USDC",
        validation_alias=AliasChoices("token", "asset", "tokenAddress"),
        description="Token symbol or contract address",
    )
    description: Optional[str] = None

    @field_validator("network", mode="before")
    @classmethod
    def chain_id_to_str(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class PaymentRequired(BaseModel):
    """x402 Payment Required response body (HTTP 402)"""
    x402Version: int = 1
    accepts: List[PaymentOption] = Field(default_factory=list)
    error: Optional[str] = None
    description: Optional[str] = None

    def to_header(self) -> str:
        """Encode as base64 JSON for the PAYMENT-REQUIRED header"""
        return base64.b64encode(self.model_dump_json(exclude_none=True).encode()).decode()

    @classmethod
    def from_header(cls, value: str) -> "PaymentRequired":
        """Raises ValueError when the header is not base64 JSON of this shape"""
        return cls.model_validate_json(base64.b64decode(value, validate=True))


class PaymentProof(BaseModel):
    """x402 payment proof sent in the X-PAYMENT header"""
    x402Version: int = 1
    scheme: str = "exact"
    network: str
    payload: Dict[str, Any] = Field(description="Contains the transaction signature")

    @property
    def signature(self) -> Optional[str]:
        return self.payload.get("signature")

    def encode(self) -> str:
        return base64.b64encode(self.model_dump_json().encode()).decode()

    @classmethod
    def decode(cls, value: str) -> "PaymentProof":
        """Raises ValueError when the header is not base64 JSON of this shape"""
        return cls.model_validate_json(base64.b64decode(value, validate=True))


class VerificationResult(BaseModel):
    """Outcome of checking a payment on-chain"""
    verified: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    amount: Optional[int] = None
