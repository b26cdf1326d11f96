"""
Payment negotiator
Runs the cheap gates, then the x402 challenge exchange, then opens a session
"""

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx
import structlog
from pydantic import ValidationError

from agentmarket.amounts import format_price, from_base_units, USDC_DECIMALS
from agentmarket.errors import (
    HealthCheckFailedError,
    PriceExceededError,
    ServiceDeclinedError,
    ServiceUnavailableError,
    SpendingLimitExceededError,
)
from agentmarket.health.prober import HealthProber
from agentmarket.models import (
    HealthResult,
    HealthStatus,
    PaymentChallenge,
    PaymentInstruction,
    ServiceDescriptor,
    Session,
    SessionStatus,
)
from agentmarket.payments.limits import SpendingLimitGuard
from agentmarket.payments.models import PaymentRequired
from agentmarket.sessions.manager import SessionManager

logger = structlog.get_logger()

PAYMENT_REQUIRED_HEADERS = ("PAYMENT-REQUIRED", "X-PAYMENT-REQUIRED")


def parse_payment_required(response: httpx.Response) -> PaymentRequired:
    """
    Read the payment requirements from a 402 response.
    The JSON body wins; a base64 PAYMENT-REQUIRED header is the fallback.
    """
    try:
        body = response.json()
    except ValueError:
        body = None

    try:
        if isinstance(body, dict) and body.get("accepts"):
            return PaymentRequired.model_validate(body)
        for name in PAYMENT_REQUIRED_HEADERS:
            header = response.headers.get(name)
            if header:
                return PaymentRequired.from_header(header)
    except ValueError as e:
        raise ServiceDeclinedError("Malformed payment challenge", {"error": str(e)}) from e

    raise ServiceDeclinedError("Service returned 402 without payment requirements")


class PaymentNegotiator:
    """
    Turns a ranked service choice into a payment-ready session.

    Gates run in order and each aborts before the next: price, spending
    limits, health, then the 402 challenge. The challenged amount is then
    reserved against the buyer's limits for the life of the session.
    """

    def __init__(
        self,
        sessions: SessionManager,
        http_client: httpx.AsyncClient,
        guard: Optional[SpendingLimitGuard] = None,
        prober: Optional[HealthProber] = None,
        escrow_address: Optional[str] = None,
        token_decimals: int = USDC_DECIMALS,
        request_timeout: float = 30.0,
        default_max_retries: int = 2,
        default_network: str = "base-sepolia",
    ):
        self.sessions = sessions
        self.http_client = http_client
        self.guard = guard
        self.prober = prober
        self.escrow_address = escrow_address or None
        self.token_decimals = token_decimals
        self.request_timeout = request_timeout
        self.default_max_retries = default_max_retries
        self.default_network = default_network

    async def prepare(
        self,
        service: ServiceDescriptor,
        request_data: Any,
        *,
        alternatives: Sequence[ServiceDescriptor] = (),
        max_payment: Optional[Decimal] = None,
        user_id: Optional[str] = None,
        require_health_check: bool = True,
        health_result: Optional[HealthResult] = None,
        health_by_service: Optional[Mapping[str, HealthStatus]] = None,
        max_retries: Optional[int] = None,
    ) -> Session:
        """
        Prepare a purchase of ``service``.

        Returns:
            Session in payment_ready status carrying the PaymentInstruction

        Raises:
            PriceExceededError: price above max_payment (no network call made)
            SpendingLimitExceededError: guard denied the spend
            HealthCheckFailedError: the service probed unhealthy
            ServiceUnavailableError: the service could not be reached
            ServiceDeclinedError: no usable payment challenge
        """
        # Price gate
        if max_payment is not None and service.price > max_payment:
            raise PriceExceededError(
                f"Service price {service.pricing.display} exceeds maximum payment {format_price(max_payment)}",
                {"service_id": service.id, "price": service.pricing.display, "max_payment": format_price(max_payment)},
            )

        # Spending limits
        spending_check = None
        if user_id and self.guard is not None:
            spending_check = await self.guard.check_limit(user_id, service.price)
            if not spending_check.allowed:
                raise SpendingLimitExceededError(
                    "Spending limit exceeded",
                    {"identity": user_id, "reason": spending_check.reason, "exceeded": spending_check.exceeded},
                )

        # Health
        health_check_results: Dict[str, HealthStatus] = dict(health_by_service or {})
        if require_health_check:
            if health_result is None and self.prober is not None:
                health_result = await self.prober.probe(service)
            if health_result is not None:
                health_check_results[service.id] = health_result.status
                if health_result.status == HealthStatus.UNHEALTHY:
                    raise HealthCheckFailedError(
                        f"Service {service.name} failed health check",
                        {"service_id": service.id, "error": health_result.error},
                    )

        # Payment challenge
        challenge = await self.request_challenge(service, request_data)

        if max_payment is not None:
            challenge_amount = from_base_units(challenge.amount, self.token_decimals)
            if challenge_amount > max_payment:
                raise PriceExceededError(
                    f"Requested payment {format_price(challenge_amount)} exceeds maximum payment {format_price(max_payment)}",
                    {"service_id": service.id, "amount": challenge.amount, "max_payment": format_price(max_payment)},
                )

        registered = service.payment_addresses.get(challenge.network)
        if registered and registered.lower() != challenge.recipient.lower():
            raise ServiceDeclinedError(
                "Payment recipient does not match the registered address",
                {"service_id": service.id, "network": challenge.network, "recipient": challenge.recipient},
            )

        instruction = self.build_instruction(challenge)

        session = Session(
            user_id=user_id,
            selected_service=service,
            alternative_services=list(alternatives),
            health_check_results=health_check_results,
            request_data=request_data,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            require_health_check=require_health_check,
        )
        session_id = await self.sessions.create(session)

        # The challenge amount is what the buyer actually pays; hold it until settled
        if user_id and self.guard is not None:
            challenge_amount = from_base_units(challenge.amount, self.token_decimals)
            reservation = await self.guard.reserve(
                user_id,
                challenge_amount,
                key=session_id,
                expires_at=self.sessions.get(session_id).expires_at,
            )
            if not reservation.allowed:
                self.sessions.delete(session_id)
                raise SpendingLimitExceededError(
                    "Spending limit exceeded",
                    {"identity": user_id, "reason": reservation.reason, "exceeded": reservation.exceeded},
                )
            spending_check = reservation

        session = await self.sessions.update(
            session_id,
            status=SessionStatus.PAYMENT_READY,
            payment_instruction=instruction,
            spending_check=spending_check,
        )

        logger.info(
            "payment_prepared",
            session_id=session_id,
            service_id=service.id,
            amount=instruction.amount,
            recipient=instruction.recipient,
            network=instruction.network,
        )
        return session

    async def request_challenge(self, service: ServiceDescriptor, request_data: Any) -> PaymentChallenge:
        """POST without proof and pick the cheapest acceptable 402 option"""
        try:
            response = await self.http_client.post(
                service.endpoint, json=request_data, timeout=self.request_timeout
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("payment_challenge_failed", service_id=service.id, error=str(e))
            raise ServiceUnavailableError(
                "Failed to contact service",
                {"service_id": service.id, "error": str(e) or type(e).__name__},
            ) from e

        if response.status_code != 402:
            raise ServiceDeclinedError(
                f"Service did not request payment (HTTP {response.status_code})",
                {"service_id": service.id, "status_code": response.status_code},
            )

        payment_required = parse_payment_required(response)

        options = payment_required.accepts
        if service.network:
            options = [o for o in options if o.network is None or o.network == service.network]
        if not options:
            raise ServiceDeclinedError(
                "No acceptable payment option",
                {"service_id": service.id, "network": service.network},
            )

        # min() keeps the first option on ties
        best = min(options, key=lambda o: o.amount)
        try:
            return PaymentChallenge(
                amount=best.amount,
                token=best.token,
                recipient=best.recipient,
                network=best.network or service.network or self.default_network,
                scheme=best.scheme,
                currency=service.pricing.currency,
            )
        except ValidationError as e:
            raise ServiceDeclinedError("Malformed payment challenge", {"error": str(e)}) from e

    def build_instruction(self, challenge: PaymentChallenge) -> PaymentInstruction:
        """With an escrow configured the buyer pays the escrow instead of the provider"""
        return PaymentInstruction(
            amount=challenge.amount,
            decimals=self.token_decimals,
            currency=challenge.currency,
            token=challenge.token,
            recipient=self.escrow_address or challenge.recipient,
            payee=challenge.recipient,
            network=challenge.network,
        )
