"""
Completion engine
Verifies a client-supplied payment proof, calls the service with the proof
attached and falls back to alternates without charging again
"""

import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import httpx
import structlog

from agentmarket.errors import (
    AllServicesFailedError,
    InfrastructureError,
    PaymentVerificationError,
    ServiceExecutionError,
    SessionNotFoundError,
    SessionStateError,
)
from agentmarket.ledger import TransactionLedger
from agentmarket.models import (
    CompletionMetadata,
    CompletionResult,
    PaymentInstruction,
    PaymentSummary,
    ServiceDescriptor,
    ServiceSummary,
    Session,
    SessionStatus,
    TransactionRecord,
    TransactionStatus,
)
from agentmarket.payments.limits import SpendingLimitGuard
from agentmarket.payments.models import PaymentProof
from agentmarket.payments.signatures import validate_signature
from agentmarket.payments.verifier import PaymentVerifier
from agentmarket.sessions.manager import SessionManager

logger = structlog.get_logger()


def _proof_key(signature: str) -> str:
    # EVM hashes are case-insensitive, base58 signatures are not
    return signature.lower() if signature.startswith("0x") else signature


class CompletionEngine:
    """
    Second phase of a purchase.

    One verified payment covers the whole fallback chain. Only alternates that
    the paid recipient can settle with are tried: with an escrow configured
    that is every alternate, otherwise those whose registered payout address
    for the network is the paid recipient.
    """

    def __init__(
        self,
        sessions: SessionManager,
        verifier: PaymentVerifier,
        ledger: TransactionLedger,
        http_client: httpx.AsyncClient,
        request_timeout: float = 30.0,
        escrow_address: Optional[str] = None,
        buyer_address: Optional[str] = None,
        guard: Optional[SpendingLimitGuard] = None,
        max_redeemed_proofs: int = 10_000,
    ):
        self.sessions = sessions
        self.verifier = verifier
        self.ledger = ledger
        self.http_client = http_client
        self.request_timeout = request_timeout
        self.escrow_address = escrow_address or None
        self.buyer_address = buyer_address
        self.guard = guard
        self.max_redeemed_proofs = max_redeemed_proofs
        # proof -> session that redeemed it, oldest first
        self._redeemed: "OrderedDict[str, str]" = OrderedDict()

    async def complete(
        self, session_id: str, signature: str, retry_on_failure: bool = True
    ) -> CompletionResult:
        """
        Verify payment and execute the prepared request.

        Raises:
            SessionNotFoundError: unknown or expired session (verifier not called)
            SessionStateError: session is not payment_ready
            InputValidationError: malformed signature
            InfrastructureError: verifier unreachable; the session stays payment_ready
            PaymentVerificationError: payment rejected; the session is failed
            ServiceExecutionError: paid but every eligible service failed, or the
                call path broke after payment; the session is failed either way
        """
        started = time.perf_counter()

        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError({"session_id": session_id})
        if session.status != SessionStatus.PAYMENT_READY:
            raise SessionStateError(
                f"Session is {session.status.value}, expected payment_ready",
                {"session_id": session_id, "status": session.status.value},
            )
        instruction = session.payment_instruction
        if instruction is None or session.selected_service is None:
            raise SessionStateError("Session has no payment instruction", {"session_id": session_id})

        signature = validate_signature(signature, instruction.network)

        key = _proof_key(signature)
        owner = self._claim_proof(key, session_id)
        if owner != session_id:
            raise PaymentVerificationError(
                "Payment proof already used by another session",
                {"session_id": session_id, "verification_completed": False},
            )

        try:
            verification = await self.verifier.verify_payment(signature, instruction)
        except Exception as e:
            self._redeemed.pop(key, None)
            logger.error("payment_verifier_unavailable", session_id=session_id, error=str(e))
            raise InfrastructureError(
                "Payment verification unavailable",
                {"session_id": session_id, "error": str(e)},
            ) from e

        if not verification.verified:
            self._redeemed.pop(key, None)
            await self.sessions.update(
                session_id,
                status=SessionStatus.FAILED,
                signature=signature,
                last_error=verification.error,
            )
            await self.ledger.record(
                self._record(
                    session, session.selected_service, TransactionStatus.FAILED, signature,
                    error=verification.error or "Payment verification failed",
                )
            )
            self._release(session)
            raise PaymentVerificationError(
                "Payment verification failed",
                {
                    "session_id": session_id,
                    "reason": verification.error,
                    "verification_completed": True,
                },
            )

        # A concurrent second completion fails here
        session = await self.sessions.update(session_id, status=SessionStatus.PAID, signature=signature)
        logger.info("payment_accepted", session_id=session_id, tx_hash=signature)

        try:
            return await self._execute(session, signature, retry_on_failure, started)
        except ServiceExecutionError:
            raise
        except Exception as e:
            logger.exception("purchase_aborted_after_payment", session_id=session_id, error=str(e))
            await self._fail_after_payment(session, signature, str(e) or type(e).__name__)
            raise ServiceExecutionError(
                "Service failed after payment",
                {
                    "session_id": session_id,
                    "transaction_id": session.transaction_id,
                    "payment_verified": True,
                    "error": str(e) or type(e).__name__,
                },
            ) from e
        finally:
            self._release(session)

    async def _execute(
        self, session: Session, signature: str, retry_on_failure: bool, started: float
    ) -> CompletionResult:
        session_id = session.session_id
        instruction = session.payment_instruction

        proof_header = PaymentProof(
            network=instruction.network,
            payload={
                "signature": signature,
                "transactionId": session.transaction_id,
                "amount": str(instruction.amount),
                "recipient": instruction.recipient,
                "token": instruction.token,
            },
        ).encode()

        candidates = [session.selected_service]
        skipped: List[str] = []
        if retry_on_failure:
            for alternative in session.alternative_services:
                if self._can_reuse_payment(alternative, instruction):
                    candidates.append(alternative)
                else:
                    skipped.append(alternative.id)

        tried: List[str] = []
        errors: Dict[str, str] = {}

        for index, service in enumerate(candidates):
            if index > 0:
                if session.retry_count >= session.max_retries:
                    break
                session = await self.sessions.update(session_id, retry_count=session.retry_count + 1)
                logger.info("service_fallback", session_id=session_id, service_id=service.id, attempt=index)

            tried.append(service.id)
            try:
                result = await self._call_service(service, session.request_data, proof_header)
            except ServiceExecutionError as e:
                errors[service.id] = e.message
                logger.warning("service_call_failed", session_id=session_id, service_id=service.id, error=e.message)
                continue

            await self.sessions.update(session_id, status=SessionStatus.COMPLETED, service_result=result)
            await self.ledger.record(
                self._record(session, service, TransactionStatus.COMPLETED, signature, response=result)
            )

            primary_id = session.selected_service.id
            logger.info("purchase_completed", session_id=session_id, service_id=service.id, retries=session.retry_count)
            return CompletionResult(
                session_id=session_id,
                service_result=result,
                service=ServiceSummary.from_service(service, session.health_check_results.get(service.id)),
                payment=PaymentSummary(
                    transaction_id=session.transaction_id,
                    signature=signature,
                    amount=instruction.display,
                    amount_base_units=instruction.amount,
                    currency=instruction.currency,
                ),
                metadata=CompletionMetadata(
                    retries_used=session.retry_count,
                    primary_service_failed=index > 0,
                    primary_service_error=errors.get(primary_id),
                    total_time_ms=round((time.perf_counter() - started) * 1000, 2),
                ),
                note=f"Served by backup service {service.name} after the primary failed" if index > 0 else None,
            )

        last_error = errors.get(tried[-1]) if tried else None
        await self.sessions.update(session_id, status=SessionStatus.FAILED, last_error=last_error)
        await self.ledger.record(
            self._record(
                session, session.selected_service, TransactionStatus.FAILED, signature,
                error=last_error or "Service failed after payment",
            )
        )

        details = {
            "session_id": session_id,
            "transaction_id": session.transaction_id,
            "payment_verified": True,
            "backup_services_tried": tried,
            "errors": errors,
        }
        if skipped:
            details["ineligible_services"] = skipped

        if len(tried) == 1:
            raise ServiceExecutionError("Service failed after payment", details)
        raise AllServicesFailedError("All services failed", details)

    def _claim_proof(self, key: str, session_id: str) -> str:
        """Bind a proof to a session; returns the session that owns it"""
        owner = self._redeemed.get(key)
        if owner is not None:
            return owner
        self._redeemed[key] = session_id
        while len(self._redeemed) > self.max_redeemed_proofs:
            self._redeemed.popitem(last=False)
        return session_id

    def _release(self, session: Session) -> None:
        if self.guard is not None and session.user_id:
            self.guard.release(session.user_id, session.session_id)

    async def _fail_after_payment(self, session: Session, signature: str, error: str) -> None:
        """Leave a paid session failed and ledgered when the fallback chain broke down"""
        current = self.sessions.get(session.session_id)
        if current is not None and current.status == SessionStatus.COMPLETED:
            return
        if current is not None and current.status == SessionStatus.PAID:
            await self.sessions.update(session.session_id, status=SessionStatus.FAILED, last_error=error)
        await self.ledger.record(
            self._record(session, session.selected_service, TransactionStatus.FAILED, signature, error=error)
        )

    def _can_reuse_payment(self, service: ServiceDescriptor, instruction: PaymentInstruction) -> bool:
        if self.escrow_address and instruction.recipient.lower() == self.escrow_address.lower():
            return True
        return service.payment_address(instruction.network).lower() == instruction.recipient.lower()

    async def _call_service(self, service: ServiceDescriptor, request_data: Any, proof_header: str) -> Any:
        try:
            response = await self.http_client.post(
                service.endpoint,
                json=request_data,
                headers={"X-PAYMENT": proof_header},
                timeout=self.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise ServiceExecutionError("Service request timed out", {"service_id": service.id}) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ServiceExecutionError(
                f"Service request failed: {str(e) or type(e).__name__}", {"service_id": service.id}
            ) from e

        if not response.is_success:
            raise ServiceExecutionError(
                f"Service returned HTTP {response.status_code}",
                {"service_id": service.id, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError:
            return {"result": response.text}

    def _record(
        self,
        session: Session,
        service: ServiceDescriptor,
        status: TransactionStatus,
        signature: str,
        response: Any = None,
        error: Optional[str] = None,
    ) -> TransactionRecord:
        instruction = session.payment_instruction
        return TransactionRecord(
            id=session.transaction_id,
            session_id=session.session_id,
            service_id=service.id,
            buyer=session.user_id or self.buyer_address or "anonymous",
            seller=service.payment_address(instruction.network) or instruction.payee,
            amount=instruction.amount_decimal,
            currency=instruction.currency,
            status=status,
            request=session.request_data if isinstance(session.request_data, dict) else {"data": session.request_data},
            response=response if isinstance(response, dict) or response is None else {"result": response},
            payment_hash=signature,
            error=error,
        )
