"""
Marketplace orchestrator
Two-call purchase flow: discover_and_prepare, then execute_and_complete.
Every failure comes back as an ErrorResponse rather than an exception.
"""

from decimal import Decimal
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from agentmarket.amounts import format_price, parse_price
from agentmarket.config import BuyerConfig, MarketplaceConfig, get_marketplace_config
from agentmarket.database.client import DatabaseClient
from agentmarket.database.memory import InMemoryDatabase
from agentmarket.errors import (
    HealthCheckFailedError,
    InfrastructureError,
    InputValidationError,
    MarketplaceError,
    NoHealthyServiceError,
    NoServicesFoundError,
    NotFoundError,
    ServiceUnavailableError,
)
from agentmarket.execution.engine import CompletionEngine
from agentmarket.health.prober import HealthProber, partition_by_health
from agentmarket.intent import detect_capability
from agentmarket.ledger import TransactionLedger
from agentmarket.models import (
    CompletionResult,
    ErrorResponse,
    HealthResult,
    HealthStatus,
    PreparedPurchase,
    RankingWeights,
    ServiceDescriptor,
    ServiceSummary,
    Session,
)
from agentmarket.payments.limits import SpendingLimitGuard
from agentmarket.payments.negotiator import PaymentNegotiator
from agentmarket.payments.verifier import EvmPaymentVerifier, PaymentVerifier
from agentmarket.payments.wallet import EvmWallet, WalletManager
from agentmarket.ranking import ServiceRanker
from agentmarket.registry.client import RegistryClient
from agentmarket.sessions.manager import SessionManager

logger = structlog.get_logger()


class MarketplaceOrchestrator:
    """Buyer-facing entry point wiring discovery, payment and completion"""

    def __init__(
        self,
        registry: RegistryClient,
        prober: HealthProber,
        ranker: ServiceRanker,
        negotiator: PaymentNegotiator,
        engine: CompletionEngine,
        sessions: SessionManager,
        guard: SpendingLimitGuard,
        ledger: TransactionLedger,
        wallet: Optional[WalletManager] = None,
        health_check_candidates: int = 5,
        default_max_retries: int = 2,
    ):
        self.registry = registry
        self.prober = prober
        self.ranker = ranker
        self.negotiator = negotiator
        self.engine = engine
        self.sessions = sessions
        self.guard = guard
        self.ledger = ledger
        self.wallet = wallet
        self.health_check_candidates = health_check_candidates
        self.default_max_retries = default_max_retries

    async def _respond(self, operation: str, call: Awaitable[Any]) -> Any:
        """Await ``call`` and convert any failure into an ErrorResponse"""
        try:
            return await call
        except MarketplaceError as e:
            logger.warning(f"{operation}_failed", code=e.code, error=e.message)
            return ErrorResponse.from_error(e)
        except Exception as e:
            logger.exception(f"{operation}_error", error=str(e))
            return ErrorResponse(error="Internal error", code="INTERNAL_ERROR", details={"error": str(e)})

    async def _search(
        self,
        capabilities: Optional[Sequence[str]],
        max_price: Optional[Decimal],
        min_rating: Any,
    ) -> List[ServiceDescriptor]:
        try:
            return await self.registry.search(capabilities=capabilities, max_price=max_price, min_rating=min_rating)
        except MarketplaceError:
            raise
        except Exception as e:
            logger.error("registry_unavailable", error=str(e))
            raise InfrastructureError("Service registry unavailable", {"error": str(e)}) from e

    # ===== DISCOVERY =====

    async def discover_services(
        self,
        capability: Optional[str] = None,
        max_price: Any = None,
        min_rating: Any = None,
    ) -> Union[List[ServiceSummary], ErrorResponse]:
        """List matching services without health checks or payment"""

        async def run():
            services = await self._search([capability] if capability else None, max_price, min_rating)
            return [ServiceSummary.from_service(s) for s in services]

        return await self._respond("discover_services", run())

    async def discover_and_prepare(
        self,
        capability: str,
        request_data: Any,
        *,
        max_price: Any = None,
        min_rating: Any = None,
        preferred_providers: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        require_health_check: bool = True,
        max_retries: Optional[int] = None,
        ranking_weights: Optional[RankingWeights] = None,
    ) -> Union[PreparedPurchase, ErrorResponse]:
        """
        Phase one: find, check and rank services, then prepare payment for the best.

        Returns:
            PreparedPurchase with the payment instruction to sign, or ErrorResponse
        """
        return await self._respond(
            "discover_and_prepare",
            self._discover_and_prepare(
                capability,
                request_data,
                max_price=max_price,
                min_rating=min_rating,
                preferred_providers=preferred_providers,
                user_id=user_id,
                require_health_check=require_health_check,
                max_retries=max_retries,
                ranking_weights=ranking_weights,
            ),
        )

    async def _discover_and_prepare(
        self,
        capability: str,
        request_data: Any,
        *,
        max_price: Any,
        min_rating: Any,
        preferred_providers: Optional[Sequence[str]],
        user_id: Optional[str],
        require_health_check: bool,
        max_retries: Optional[int],
        ranking_weights: Optional[RankingWeights] = None,
    ) -> PreparedPurchase:
        if not capability or not isinstance(capability, str):
            raise InputValidationError("capability is required", field="capability")

        limit = parse_price(max_price, field="max_price") if max_price is not None else None

        if max_retries is None:
            max_retries = self.default_max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or not 0 <= max_retries <= 5:
            raise InputValidationError("max_retries must be an integer between 0 and 5", field="max_retries")

        services = await self._search([capability], limit, min_rating)
        if not services:
            raise NoServicesFoundError(
                f"No services found for capability '{capability}'",
                {"capability": capability, "max_price": format_price(limit) if limit is not None else None},
            )

        if preferred_providers:
            wanted = set(preferred_providers)
            preferred = [s for s in services if s.id in wanted or s.name in wanted or s.provider in wanted]
            if preferred:
                services = preferred
            else:
                logger.info("preferred_providers_unavailable", capability=capability, preferred=list(wanted))

        candidates = services[: self.health_check_candidates]
        health: Dict[str, HealthResult] = {}

        if require_health_check:
            results = await self.prober.probe_many(candidates)
            health = {r.service_id: r for r in results}
            healthy, unhealthy, unknown = partition_by_health(candidates, results)
            if not healthy:
                raise NoHealthyServiceError(
                    "No healthy service available",
                    {
                        "capability": capability,
                        "checked": len(candidates),
                        "unhealthy": [s.id for s in unhealthy],
                        "unknown": [s.id for s in unknown],
                    },
                )
            candidates = [s for s in candidates if health[s.id].status != HealthStatus.UNHEALTHY]

        ranked = self.ranker.rank(candidates, health, ranking_weights)
        health_by_service = {service_id: r.status for service_id, r in health.items()}

        skipped: List[Dict[str, Any]] = []
        last_error: Optional[MarketplaceError] = None

        for index, service in enumerate(ranked):
            try:
                session = await self.negotiator.prepare(
                    service,
                    request_data,
                    alternatives=ranked[index + 1:],
                    max_payment=limit,
                    user_id=user_id,
                    require_health_check=require_health_check,
                    health_result=health.get(service.id),
                    health_by_service=health_by_service,
                    max_retries=max_retries,
                )
            except (HealthCheckFailedError, ServiceUnavailableError) as e:
                skipped.append({"serviceId": service.id, "code": e.code, "error": e.message})
                logger.warning("candidate_skipped", service_id=service.id, code=e.code, error=e.message)
                last_error = e
                if len(skipped) > max_retries:
                    break
                continue

            return self._prepared(session, skipped)

        if last_error is not None:
            last_error.details.setdefault("candidates_skipped", skipped)
            raise last_error
        raise NoServicesFoundError(f"No services found for capability '{capability}'", {"capability": capability})

    def _prepared(self, session: Session, skipped: List[Dict[str, Any]]) -> PreparedPurchase:
        instruction = session.payment_instruction
        service = session.selected_service
        health = session.health_check_results

        return PreparedPurchase(
            session_id=session.session_id,
            selected_service=ServiceSummary.from_service(service, health.get(service.id)),
            transaction_id=session.transaction_id,
            payment_instruction=instruction,
            estimated_cost=instruction.display,
            spending_check=session.spending_check.budget() if session.spending_check else None,
            alternative_services=[
                ServiceSummary.from_service(s, health.get(s.id)) for s in session.alternative_services
            ],
            candidates_skipped=skipped,
            expires_at=session.expires_at,
            next_step=(
                f"Pay {instruction.display} {instruction.currency} to {instruction.recipient} "
                f"on {instruction.network}, then call execute_and_complete with the transaction hash"
            ),
        )

    async def prepare_from_intent(
        self, message: str, request_data: Any = None, **options: Any
    ) -> Union[PreparedPurchase, ErrorResponse]:
        """Detect the capability from free text, then run discover_and_prepare"""
        capability = detect_capability(message)
        if capability is None:
            return ErrorResponse.from_error(
                InputValidationError("No service capability detected in message", field="message")
            )
        logger.info("intent_detected", capability=capability)
        data = request_data if request_data is not None else {"text": message}
        return await self.discover_and_prepare(capability, data, **options)

    # ===== COMPLETION =====

    async def execute_and_complete(
        self, session_id: str, signature: str, retry_on_failure: bool = True
    ) -> Union[CompletionResult, ErrorResponse]:
        """Phase two: verify the payment and run the prepared request"""
        return await self._respond(
            "execute_and_complete",
            self.engine.complete(session_id, signature, retry_on_failure=retry_on_failure),
        )

    async def get_session(self, session_id: str) -> Union[Session, ErrorResponse]:
        session = self.sessions.get(session_id)
        if session is None:
            return ErrorResponse(error="Session not found or expired", code="SESSION_NOT_FOUND",
                                 details={"session_id": session_id})
        return session

    # ===== SPENDING LIMITS =====

    async def set_spending_limits(
        self,
        identity: str,
        per_transaction: Optional[str] = None,
        daily: Optional[str] = None,
        monthly: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> Union[Dict[str, Any], ErrorResponse]:

        async def run():
            limits = await self.guard.set_limits(
                identity, per_transaction=per_transaction, daily=daily, monthly=monthly, enabled=enabled
            )
            return {"success": True, "identity": identity, "limits": limits.display()}

        return await self._respond("set_spending_limits", run())

    async def check_spending(
        self, identity: str, amount: Any = None
    ) -> Union[Dict[str, Any], ErrorResponse]:
        """Current limits and spend, plus whether ``amount`` would be allowed"""

        async def run():
            limits = await self.guard.get_limits(identity)
            spending = await self.guard.get_spending(identity)
            pending = self.guard.pending(identity)
            report: Dict[str, Any] = {
                "success": True,
                "identity": identity,
                "limits": limits.display() if limits else None,
                "spending": {
                    "today": format_price(spending.total_today),
                    "thisMonth": format_price(spending.total_this_month),
                    "transactionsToday": spending.transaction_count,
                    "pending": format_price(pending),
                },
            }
            if limits:
                report["remaining"] = {
                    "daily": format_price(max(Decimal("0"), limits.daily - spending.total_today - pending)),
                    "monthly": format_price(max(Decimal("0"), limits.monthly - spending.total_this_month - pending)),
                }
            if amount is not None:
                check = await self.guard.check_limit(identity, parse_price(amount, field="amount"))
                report["allowed"] = check.allowed
                report["reason"] = check.reason
            return report

        return await self._respond("check_spending", run())

    async def get_balance(self, token: str = "USDC") -> Union[Dict[str, Any], ErrorResponse]:

        async def run():
            if self.wallet is None:
                raise NotFoundError("No wallet configured")
            balance = await self.wallet.get_balance(token)
            return {
                "success": True,
                "address": self.wallet.get_address(),
                "token": token,
                "balance": format_price(balance),
            }

        return await self._respond("get_balance", run())

    async def transaction_history(
        self, buyer: Optional[str] = None, service_id: Optional[str] = None, limit: int = 50
    ) -> Union[List[Dict[str, Any]], ErrorResponse]:

        async def run():
            records = await self.ledger.history(buyer=buyer, service_id=service_id, limit=limit)
            return [r.model_dump(mode="json", by_alias=True) for r in records]

        return await self._respond("transaction_history", run())


def build_orchestrator(
    config: Optional[MarketplaceConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    database: Any = None,
    verifier: Optional[PaymentVerifier] = None,
    wallet: Optional[WalletManager] = None,
    buyer_config: Optional[BuyerConfig] = None,
) -> MarketplaceOrchestrator:
    """
    Wire every component from settings.

    Without Supabase credentials the in-memory store backs the registry,
    ledger and spending limits.
    """
    config = config or get_marketplace_config()
    http_client = http_client or httpx.AsyncClient()

    if database is None:
        if config.supabase_url and config.supabase_key:
            database = DatabaseClient(config.supabase_url, config.supabase_key)
        else:
            database = InMemoryDatabase()

    if verifier is None:
        verifier = EvmPaymentVerifier.from_rpc_url(config.rpc_url, config.token_addresses())

    if wallet is None and buyer_config is not None and (buyer_config.buyer_private_key or buyer_config.buyer_address):
        wallet = EvmWallet.from_config(buyer_config, config)

    sessions = SessionManager(ttl_seconds=config.session_ttl_seconds)
    prober = HealthProber(
        http_client,
        timeout=config.health_check_timeout,
        max_concurrent=config.health_check_max_concurrent,
    )
    guard = SpendingLimitGuard(
        database,
        default_per_transaction=config.default_per_transaction_limit,
        default_daily=config.default_daily_limit,
        default_monthly=config.default_monthly_limit,
    )
    ledger = TransactionLedger(database)

    negotiator = PaymentNegotiator(
        sessions,
        http_client,
        guard=guard,
        prober=prober,
        escrow_address=config.escrow_address,
        token_decimals=config.token_decimals,
        request_timeout=config.service_request_timeout,
        default_max_retries=config.default_max_retries,
        default_network=config.network,
    )
    engine = CompletionEngine(
        sessions,
        verifier,
        ledger,
        http_client,
        request_timeout=config.service_request_timeout,
        escrow_address=config.escrow_address,
        buyer_address=wallet.get_address() if wallet else None,
        guard=guard,
    )

    logger.info(
        "orchestrator_ready",
        network=config.network,
        store=type(database).__name__,
        escrow=bool(config.escrow_address),
    )

    return MarketplaceOrchestrator(
        registry=RegistryClient(database),
        prober=prober,
        ranker=ServiceRanker(
            config.ranking_weights(),
            price_ceiling=config.rank_price_ceiling,
            latency_ceiling_ms=config.rank_latency_ceiling_ms,
        ),
        negotiator=negotiator,
        engine=engine,
        sessions=sessions,
        guard=guard,
        ledger=ledger,
        wallet=wallet,
        health_check_candidates=config.health_check_candidates,
        default_max_retries=config.default_max_retries,
    )
