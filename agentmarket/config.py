"""
AgentMarket Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from decimal import Decimal
from typing import Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentmarket.models import RankingWeights


class MarketplaceConfig(BaseSettings):
    """Configuration for the discovery, payment and completion pipeline"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Network Configuration
    network: str = Field(default="base-sepolia", description="Default settlement network")
    rpc_url: str = Field(default="https://sepolia.base.org")

    # Payment Configuration
    usdc_contract_address: str = Field(
        default="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        description="USDC contract address on Base"
    )
    payment_token: str = Field(default="USDC")
    token_decimals: int = Field(default=6, ge=0, le=18)
    escrow_address: str = Field(
        default="",
        description="Marketplace escrow recipient; enables fallback with one payment proof"
    )

    # Sessions
    session_ttl_seconds: int = Field(default=900, gt=0, description="Purchase session lifetime")
    session_sweep_interval: int = Field(default=300, gt=0)
    default_max_retries: int = Field(default=2, ge=0, le=5)

    # Health Checks
    health_check_timeout: float = Field(default=5.0, gt=0)
    health_check_max_concurrent: int = Field(default=10, ge=1)
    health_check_candidates: int = Field(default=5, ge=1, description="Top candidates probed per discovery")

    # Service Calls
    service_request_timeout: float = Field(default=30.0, gt=0)

    # Ranking
    rank_weight_health: float = Field(default=0.4, ge=0)
    rank_weight_rating: float = Field(default=0.3, ge=0)
    rank_weight_price: float = Field(default=0.2, ge=0)
    rank_weight_latency: float = Field(default=0.1, ge=0)
    rank_price_ceiling: Decimal = Field(default=Decimal("10"), gt=0, description="USD price scoring 0")
    rank_latency_ceiling_ms: float = Field(default=10000.0, gt=0)

    # Spending Limits
    default_per_transaction_limit: str = Field(default="$5.00")
    default_daily_limit: str = Field(default="$50.00")
    default_monthly_limit: str = Field(default="$500.00")

    # Storage
    supabase_url: str = Field(default="")
    supabase_key: str = Field(default="", description="Supabase anon or service key")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    @field_validator("escrow_address")
    @classmethod
    def strip_escrow(cls, v):
        return v.strip()

    def ranking_weights(self) -> RankingWeights:
        """Ranking weights assembled from the individual settings"""
        return RankingWeights(
            health=self.rank_weight_health,
            rating=self.rank_weight_rating,
            price=self.rank_weight_price,
            latency=self.rank_weight_latency,
        )

    def token_addresses(self) -> dict:
        """Token symbol to contract address map for the configured network"""
        return {self.payment_token.upper(): self.usdc_contract_address}


class BuyerConfig(BaseSettings):
    """Configuration for the paying agent's wallet"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Wallet Configuration
    buyer_private_key: str = Field(default="", description="Private key used only to derive the address")
    buyer_address: str = Field(default="", description="Buyer wallet address")

    @field_validator("buyer_private_key")
    @classmethod
    def validate_private_key(cls, v):
        if v and not v.startswith("0x"):
            return f"0x{v}"
        return v


class ProviderConfig(BaseSettings):
    """Configuration for a service provider speaking the x402 protocol"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    provider_name: str = Field(default="sentiment-analyzer")
    provider_address: str = Field(default="", description="Wallet receiving payments")
    provider_price: str = Field(default="$0.01", description="Price per request")
    provider_host: str = Field(default="0.0.0.0")
    provider_port: int = Field(default=8001)

    network: str = Field(default="base-sepolia")
    usdc_contract_address: str = Field(default="0x036CbD53842c5426634e7929541eC2318f3dCF7e")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")


# Cached instances for entry points
_marketplace_config: MarketplaceConfig | None = None
_buyer_config: BuyerConfig | None = None
_provider_config: ProviderConfig | None = None


def get_marketplace_config() -> MarketplaceConfig:
    """Get or create marketplace configuration"""
    global _marketplace_config
    if _marketplace_config is None:
        _marketplace_config = MarketplaceConfig()
    return _marketplace_config


def get_buyer_config() -> BuyerConfig:
    """Get or create buyer configuration"""
    global _buyer_config
    if _buyer_config is None:
        _buyer_config = BuyerConfig()
    return _buyer_config


def get_provider_config() -> ProviderConfig:
    """Get or create provider configuration"""
    global _provider_config
    if _provider_config is None:
        _provider_config = ProviderConfig()
    return _provider_config
