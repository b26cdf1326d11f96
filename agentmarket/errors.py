"""AgentMarket error taxonomy"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base exception for all marketplace errors"""

    code = "MARKETPLACE_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


# ===== VALIDATION =====

class InputValidationError(MarketplaceError, ValueError):
    """Raised when caller input is malformed"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        super().__init__(message, details)
        self.field = field


# ===== NOT FOUND =====

class NotFoundError(MarketplaceError):
    code = "NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    """Unknown and expired sessions are reported identically"""

    code = "SESSION_NOT_FOUND"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("Session not found or expired", details)


class NoServicesFoundError(NotFoundError):
    code = "NO_SERVICES_FOUND"


# ===== POLICY =====

class PolicyError(MarketplaceError):
    code = "POLICY_VIOLATION"


class PriceExceededError(PolicyError):
    code = "PRICE_EXCEEDED"


class SpendingLimitExceededError(PolicyError):
    code = "SPENDING_LIMIT_EXCEEDED"


class HealthCheckFailedError(PolicyError):
    """Provider-side; another candidate may be tried"""

    code = "HEALTH_CHECK_FAILED"
    retryable = True


class NoHealthyServiceError(PolicyError):
    code = "NO_HEALTHY_SERVICE"


# ===== NETWORK / PROTOCOL =====

class ServiceUnavailableError(MarketplaceError):
    """Transport failure talking to a service before payment"""

    code = "SERVICE_UNAVAILABLE"
    retryable = True


class ServiceDeclinedError(MarketplaceError):
    """Service answered but not with a usable payment challenge"""

    code = "SERVICE_DECLINED"


class SessionStateError(MarketplaceError):
    code = "INVALID_SESSION_STATE"


# ===== PAYMENT =====

class PaymentVerificationError(MarketplaceError):
    """On-chain verification rejected the proof; never retried"""

    code = "PAYMENT_VERIFICATION_FAILED"


class ServiceExecutionError(MarketplaceError):
    """Payment verified but the service call failed"""

    code = "SERVICE_FAILED_AFTER_PAYMENT"


class AllServicesFailedError(ServiceExecutionError):
    code = "ALL_SERVICES_FAILED"


# ===== INFRASTRUCTURE =====

class InfrastructureError(MarketplaceError):
    """Registry, storage or verifier could not be reached"""

    code = "INFRASTRUCTURE_ERROR"
    retryable = True
