"""
AgentMarket Core Data Models
Shared models for discovery, payment sessions and the transaction ledger
"""

import re
import secrets
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from agentmarket.amounts import format_price, from_base_units, parse_price, USDC_DECIMALS
from agentmarket.errors import MarketplaceError

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s)?\s*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Accepts camelCase or snake_case input; dump with by_alias=True for the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthStatus(str, Enum):
    """Outcome of a liveness probe"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    """Purchase session lifecycle states"""
    PREPARING = "preparing"
    PAYMENT_READY = "payment_ready"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class TransactionStatus(str, Enum):
    """Ledger row status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# Registry
# ============================================================================

class Pricing(WireModel):
    """
    Normalized service price.

    Registry rows carry prices as {"perRequest": "$0.02"}, {"amount": "0.02"},
    a bare string or a number; all of them end up as a Decimal amount.
    """
    model_config = ConfigDict(frozen=True)

    amount: Decimal = Decimal("0")
    currency: str = "USDC"
    network: Optional[str] = None
    billing_model: str = "per-request"

    @model_validator(mode="before")
    @classmethod
    def normalize_shape(cls, data: Any) -> Any:
        if isinstance(data, (str, int, float, Decimal)) and not isinstance(data, bool):
            return {"amount": parse_price(data, field="pricing")}
        if isinstance(data, dict):
            data = dict(data)
            per_request = data.pop("perRequest", None)
            if per_request is None:
                per_request = data.pop("per_request", None)
            raw = data.get("amount")
            if raw is None or raw == "":
                raw = per_request if per_request is not None else "0"
            data["amount"] = parse_price(raw, field="pricing.amount")
        return data

    @property
    def display(self) -> str:
        return format_price(self.amount)


class Reputation(WireModel):
    """Provider track record as reported by the registry"""
    model_config = ConfigDict(frozen=True)

    rating: Optional[float] = Field(default=None, ge=0, le=5)
    total_jobs: int = 0
    success_rate: Optional[float] = None
    reviews: int = 0
    avg_response_time_ms: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices(
            "avgResponseTimeMs", "avg_response_time_ms", "avgResponseTime", "avg_response_time"
        ),
    )

    @field_validator("avg_response_time_ms", mode="before")
    @classmethod
    def parse_duration(cls, v):
        # "3.2s" and "450ms" both appear in registry rows
        if v is None or isinstance(v, (int, float)):
            return v
        match = _DURATION_PATTERN.match(str(v))
        if not match:
            raise ValueError(f"Invalid response time: {v!r}")
        value = float(match.group(1))
        return value if match.group(2) == "ms" else value * 1000.0


class ServiceDescriptor(WireModel):
    """Immutable snapshot of a registry listing taken at discovery time"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    provider: str = Field(default="", description="Default payout wallet address")
    endpoint: str
    capabilities: Tuple[str, ...] = ()
    pricing: Pricing
    reputation: Reputation = Field(default_factory=Reputation)
    payment_addresses: Dict[str, str] = Field(default_factory=dict)
    health_check_url: Optional[str] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def lift_metadata(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("metadata"), dict):
            return data
        data = dict(data)
        metadata = data.pop("metadata")

        if not data.get("healthCheckUrl") and not data.get("health_check_url"):
            if metadata.get("healthCheckUrl"):
                data["health_check_url"] = metadata["healthCheckUrl"]

        addresses = dict(metadata.get("paymentAddresses") or {})
        addresses.update(data.pop("paymentAddresses", None) or {})
        addresses.update(data.pop("payment_addresses", None) or {})
        if addresses:
            data["payment_addresses"] = addresses

        if not data.get("provider") and metadata.get("walletAddress"):
            data["provider"] = metadata["walletAddress"]
        return data

    @property
    def price(self) -> Decimal:
        return self.pricing.amount

    @property
    def network(self) -> Optional[str]:
        return self.pricing.network

    @property
    def health_url(self) -> str:
        if self.health_check_url:
            return self.health_check_url
        return f"{self.endpoint.rstrip('/')}/health"

    def payment_address(self, network: Optional[str]) -> str:
        """Payout address registered for ``network``, else the provider address"""
        if network and network in self.payment_addresses:
            return self.payment_addresses[network]
        return self.provider


class ServiceFilter(BaseModel):
    """Registry search filter: AND across fields, OR across capability tags"""
    capabilities: List[str] = Field(default_factory=list)
    max_price: Optional[Decimal] = None
    min_rating: Optional[float] = Field(default=None, ge=0, le=5)

    def matches(self, service: ServiceDescriptor) -> bool:
        if self.capabilities and not any(c in service.capabilities for c in self.capabilities):
            return False
        if self.max_price is not None and service.price > self.max_price:
            return False
        if self.min_rating is not None and (service.reputation.rating or 0) < self.min_rating:
            return False
        return True


# ============================================================================
# Health and Ranking
# ============================================================================

class HealthResult(WireModel):
    """Single probe outcome; lives only until ranking"""
    model_config = ConfigDict(frozen=True)

    service_id: str
    status: HealthStatus
    response_time_ms: Optional[float] = None
    details: Optional[Any] = None
    error: Optional[str] = None


class RankingWeights(BaseModel):
    """Relative importance of each score component"""
    health: float = Field(default=0.4, ge=0)
    rating: float = Field(default=0.3, ge=0)
    price: float = Field(default=0.2, ge=0)
    latency: float = Field(default=0.1, ge=0)


# ============================================================================
# Spending Limits
# ============================================================================

class SpendingLimits(WireModel):
    """Per-identity spending caps"""
    identity: str
    per_transaction: Decimal
    daily: Decimal
    monthly: Decimal
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def display(self) -> Dict[str, Any]:
        return {
            "perTransaction": format_price(self.per_transaction),
            "daily": format_price(self.daily),
            "monthly": format_price(self.monthly),
            "enabled": self.enabled,
        }


class SpendingStats(WireModel):
    """Accumulated completed spend for an identity"""
    identity: str
    total_today: Decimal = Decimal("0")
    total_this_month: Decimal = Decimal("0")
    transaction_count: int = 0
    last_transaction: Optional[datetime] = None


class BudgetSnapshot(WireModel):
    allowed: bool
    remaining_daily: Optional[str] = None
    remaining_monthly: Optional[str] = None


class LimitCheckResult(WireModel):
    """Outcome of a spending limit check"""
    allowed: bool
    reason: Optional[str] = None
    exceeded: Optional[Literal["per-transaction", "daily", "monthly"]] = None
    current_spending: Optional[SpendingStats] = None
    pending: Decimal = Field(default=Decimal("0"), description="Reserved by other unsettled sessions")
    limits: Optional[SpendingLimits] = None

    def budget(self) -> BudgetSnapshot:
        if not self.limits or not self.current_spending:
            return BudgetSnapshot(allowed=self.allowed)
        return BudgetSnapshot(
            allowed=self.allowed,
            remaining_daily=format_price(self.limits.daily - self.current_spending.total_today - self.pending),
            remaining_monthly=format_price(
                self.limits.monthly - self.current_spending.total_this_month - self.pending
            ),
        )


# ============================================================================
# Payments
# ============================================================================

class PaymentChallenge(WireModel):
    """Payment option chosen from a service's 402 response"""
    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0, description="Amount in token base units")
    token: str
    recipient: str
    network: str
    scheme: str = "exact"
    currency: str = "USDC"


class PaymentInstruction(WireModel):
    """What the buyer must pay, handed to the caller for signing"""
    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0, description="Amount in token base units")
    decimals: int = USDC_DECIMALS
    currency: str = "USDC"
    token: str
    recipient: str
    payee: str = Field(description="Provider that issued the challenge")
    network: str

    @property
    def amount_decimal(self) -> Decimal:
        return from_base_units(self.amount, self.decimals)

    @property
    def display(self) -> str:
        return format_price(self.amount_decimal)


# ============================================================================
# Sessions
# ============================================================================

def _new_session_id() -> str:
    return secrets.token_urlsafe(32)


def _new_transaction_id() -> str:
    return f"tx-{uuid.uuid4().hex}"


class Session(WireModel):
    """Purchase session spanning discovery to completion"""
    session_id: str = Field(default_factory=_new_session_id)
    user_id: Optional[str] = None
    status: SessionStatus = SessionStatus.PREPARING

    # Discovery phase
    selected_service: Optional[ServiceDescriptor] = None
    alternative_services: List[ServiceDescriptor] = Field(default_factory=list)
    health_check_results: Dict[str, HealthStatus] = Field(default_factory=dict)

    # Request data forwarded to the service
    request_data: Any = None

    # Payment phase
    transaction_id: str = Field(default_factory=_new_transaction_id)
    payment_instruction: Optional[PaymentInstruction] = None
    spending_check: Optional[LimitCheckResult] = None

    # Execution phase
    signature: Optional[str] = None
    service_result: Any = None
    last_error: Optional[str] = None

    # Timing and retries
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=2, ge=0, le=5)
    require_health_check: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


# ============================================================================
# Ledger
# ============================================================================

class TransactionRecord(WireModel):
    """Append-only audit row, one per terminal outcome"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_transaction_id)
    session_id: Optional[str] = None
    service_id: str
    buyer: str
    seller: str
    amount: Decimal
    currency: str = "USDC"
    status: TransactionStatus
    request: Dict[str, Any] = Field(default_factory=dict)
    response: Optional[Dict[str, Any]] = None
    payment_hash: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# Structured Responses
# ============================================================================

class ServiceSummary(WireModel):
    id: str
    name: str
    description: str = ""
    price: str
    rating: Optional[float] = None
    endpoint: str
    health_status: Optional[HealthStatus] = None

    @classmethod
    def from_service(
        cls, service: ServiceDescriptor, health_status: Optional[HealthStatus] = None
    ) -> "ServiceSummary":
        return cls(
            id=service.id,
            name=service.name,
            description=service.description,
            price=service.pricing.display,
            rating=service.reputation.rating,
            endpoint=service.endpoint,
            health_status=health_status,
        )


class PreparedPurchase(WireModel):
    """Phase one result: a session ready for payment"""
    success: bool = True
    session_id: str
    selected_service: ServiceSummary
    transaction_id: str
    payment_instruction: PaymentInstruction
    estimated_cost: str
    spending_check: Optional[BudgetSnapshot] = None
    alternative_services: List[ServiceSummary] = Field(default_factory=list)
    candidates_skipped: List[Dict[str, Any]] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    next_step: str = ""


class PaymentSummary(WireModel):
    transaction_id: str
    signature: str
    amount: str
    amount_base_units: int
    currency: str
    status: str = "confirmed"
    verified_on_chain: bool = True


class CompletionMetadata(WireModel):
    retries_used: int = 0
    primary_service_failed: bool = False
    primary_service_error: Optional[str] = None
    total_time_ms: Optional[float] = None


class CompletionResult(WireModel):
    """Phase two result: the paid, verified service output"""
    success: bool = True
    session_id: str
    service_result: Any = None
    service: ServiceSummary
    payment: PaymentSummary
    metadata: CompletionMetadata = Field(default_factory=CompletionMetadata)
    note: Optional[str] = None


class ErrorResponse(WireModel):
    """Structured failure returned instead of raising to the caller"""
    success: bool = False
    error: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: MarketplaceError) -> "ErrorResponse":
        return cls(error=error.message, code=error.code, details=error.details)
