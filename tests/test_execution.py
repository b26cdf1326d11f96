"""
Tests for payment verification and service execution with fallback
"""

import asyncio
from decimal import Decimal

import httpx
import pytest

from agentmarket.errors import (
    AllServicesFailedError,
    InfrastructureError,
    InputValidationError,
    PaymentVerificationError,
    ServiceExecutionError,
    SessionNotFoundError,
    SessionStateError,
)
from agentmarket.execution.engine import CompletionEngine
from agentmarket.ledger import TransactionLedger
from agentmarket.models import PaymentInstruction, Session, SessionStatus, TransactionStatus
from agentmarket.payments.limits import SpendingLimitGuard
from agentmarket.payments.models import PaymentProof, VerificationResult

from tests.conftest import OTHER_TX_HASH, VALID_TX_HASH, FakeVerifier, service_route
from tests.factories import ServiceDescriptorFactory

ESCROW = "0x00000000000000000000000000000000000e5c40"


@pytest.fixture
def engine(sessions, verifier, database, http_client):
    return CompletionEngine(sessions, verifier, TransactionLedger(database), http_client, escrow_address=ESCROW)


@pytest.fixture
def services():
    return [ServiceDescriptorFactory(id=name) for name in ("primary", "backup-1", "backup-2")]


async def ready_session(sessions, primary, alternatives=(), recipient=ESCROW, max_retries=2) -> str:
    instruction = PaymentInstruction(
        amount=20000,
        token="USDC",
        recipient=recipient,
        payee=primary.provider,
        network="base-sepolia",
    )
    session_id = await sessions.create(Session(
        user_id="agent-1",
        selected_service=primary,
        alternative_services=list(alternatives),
        request_data={"text": "I love it"},
        max_retries=max_retries,
    ))
    await sessions.update(session_id, status=SessionStatus.PAYMENT_READY, payment_instruction=instruction)
    return session_id


def rows(database, status=None):
    return [t for t in database.transactions if status is None or t.status == status]


@pytest.mark.asyncio
async def test_completes_with_primary(engine, sessions, services, router, database):
    primary = services[0]
    router.add("primary.test", service_route(primary.provider, paid_body={"sentiment": "positive"}))
    session_id = await ready_session(sessions, primary, services[1:])

    result = await engine.complete(session_id, VALID_TX_HASH)

    assert result.success is True
    assert result.service_result == {"sentiment": "positive"}
    assert result.service.id == "primary"
    assert result.payment.amount == "$0.02"
    assert result.payment.amount_base_units == 20000
    assert result.metadata.retries_used == 0
    assert result.metadata.primary_service_failed is False
    assert sessions.get(session_id).status == SessionStatus.COMPLETED

    [record] = rows(database)
    assert record.status == TransactionStatus.COMPLETED
    assert record.payment_hash == VALID_TX_HASH
    assert record.buyer == "agent-1"

    request = router.requests_to("primary.test", "POST")[0]
    proof = PaymentProof.decode(request.headers["X-PAYMENT"])
    assert proof.signature == VALID_TX_HASH
    assert proof.network == "base-sepolia"


@pytest.mark.asyncio
async def test_backup_succeeds_after_primary_fails(engine, sessions, services, router, database, verifier):
    """Three ranked candidates; primary fails after payment, first backup succeeds"""
    primary, backup, spare = services
    router.add("primary.test", service_route(primary.provider, paid_status=500))
    router.add("backup-1.test", service_route(backup.provider, paid_body={"sentiment": "positive"}))
    router.add("backup-2.test", service_route(spare.provider))
    session_id = await ready_session(sessions, primary, [backup, spare])

    result = await engine.complete(session_id, VALID_TX_HASH, retry_on_failure=True)

    assert result.success is True
    assert result.service.id == "backup-1"
    assert result.metadata.retries_used == 1
    assert result.metadata.primary_service_failed is True
    assert result.metadata.primary_service_error == "Service returned HTTP 500"
    assert len(verifier.calls) == 1
    assert router.requests_to("backup-2.test") == []

    assert len(rows(database)) == 1
    assert len(rows(database, TransactionStatus.COMPLETED)) == 1

    dumped = result.model_dump(by_alias=True)
    assert dumped["metadata"]["retriesUsed"] == 1
    assert dumped["metadata"]["primaryServiceFailed"] is True


@pytest.mark.asyncio
async def test_all_services_fail(engine, sessions, services, router, database):
    """Every candidate fails after payment"""
    for service in services:
        router.add(f"{service.id}.test", service_route(service.provider, paid_status=503))
    session_id = await ready_session(sessions, services[0], services[1:])

    with pytest.raises(AllServicesFailedError) as exc:
        await engine.complete(session_id, VALID_TX_HASH)

    assert exc.value.message == "All services failed"
    assert exc.value.details["backup_services_tried"] == ["primary", "backup-1", "backup-2"]
    assert exc.value.details["payment_verified"] is True
    assert sessions.get(session_id).status == SessionStatus.FAILED

    assert len(rows(database)) == 1
    assert len(rows(database, TransactionStatus.FAILED)) == 1


@pytest.mark.asyncio
async def test_primary_only_failure(engine, sessions, services, router, database):
    router.add("primary.test", service_route(services[0].provider, paid_status=500))
    session_id = await ready_session(sessions, services[0], services[1:])

    with pytest.raises(ServiceExecutionError) as exc:
        await engine.complete(session_id, VALID_TX_HASH, retry_on_failure=False)

    assert not isinstance(exc.value, AllServicesFailedError)
    assert exc.value.message == "Service failed after payment"
    assert exc.value.details["backup_services_tried"] == ["primary"]
    assert len(rows(database, TransactionStatus.FAILED)) == 1


@pytest.mark.asyncio
async def test_retries_bounded_by_max_retries(engine, sessions, services, router):
    for service in services:
        router.add(f"{service.id}.test", service_route(service.provider, paid_status=500))
    session_id = await ready_session(sessions, services[0], services[1:], max_retries=1)

    with pytest.raises(AllServicesFailedError) as exc:
        await engine.complete(session_id, VALID_TX_HASH)

    assert exc.value.details["backup_services_tried"] == ["primary", "backup-1"]
    assert router.requests_to("backup-2.test") == []


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(engine, sessions, services, router):
    async def hang(request):
        raise httpx.ReadTimeout("timed out", request=request)

    router.add("primary.test", hang)
    router.add("backup-1.test", service_route(services[1].provider))
    session_id = await ready_session(sessions, services[0], services[1:])

    result = await engine.complete(session_id, VALID_TX_HASH)

    assert result.metadata.primary_service_error == "Service request timed out"


@pytest.mark.asyncio
async def test_direct_payment_only_reuses_proof_for_same_recipient(sessions, verifier, database, http_client, router):
    """Without escrow, an alternate paid to another wallet cannot use the proof"""
    shared = "0x00000000000000000000000000000000000000aa"
    primary = ServiceDescriptorFactory(id="primary", provider=shared)
    other_wallet = ServiceDescriptorFactory(id="backup-1")
    same_wallet = ServiceDescriptorFactory(id="backup-2", provider=shared)
    router.add("primary.test", service_route(shared, paid_status=500))
    router.add("backup-1.test", service_route(other_wallet.provider))
    router.add("backup-2.test", service_route(shared))

    engine = CompletionEngine(sessions, verifier, TransactionLedger(database), http_client)
    session_id = await ready_session(sessions, primary, [other_wallet, same_wallet], recipient=shared)

    result = await engine.complete(session_id, VALID_TX_HASH)

    assert result.service.id == "backup-2"
    assert router.requests_to("backup-1.test") == []


@pytest.mark.asyncio
async def test_expired_session_makes_no_verifier_call(engine, sessions, services, verifier, clock):
    session_id = await ready_session(sessions, services[0])
    clock.advance(minutes=16)

    with pytest.raises(SessionNotFoundError) as exc:
        await engine.complete(session_id, VALID_TX_HASH)

    assert exc.value.message == "Session not found or expired"
    assert verifier.calls == []


@pytest.mark.asyncio
async def test_verification_failure_is_terminal(sessions, services, database, http_client, router):
    verifier = FakeVerifier(VerificationResult(verified=False, error="No matching token transfer to recipient"))
    engine = CompletionEngine(sessions, verifier, TransactionLedger(database), http_client, escrow_address=ESCROW)
    for service in services:
        router.add(f"{service.id}.test", service_route(service.provider))
    session_id = await ready_session(sessions, services[0], services[1:])

    with pytest.raises(PaymentVerificationError) as exc:
        await engine.complete(session_id, VALID_TX_HASH)

    assert exc.value.message == "Payment verification failed"
    assert exc.value.details["reason"] == "No matching token transfer to recipient"
    assert exc.value.details["verification_completed"] is True
    assert len(verifier.calls) == 1
    assert router.requests == []
    assert sessions.get(session_id).status == SessionStatus.FAILED

    [record] = rows(database)
    assert record.status == TransactionStatus.FAILED

    with pytest.raises(SessionStateError):
        await engine.complete(session_id, VALID_TX_HASH)


@pytest.mark.asyncio
async def test_verifier_outage_keeps_session_payable(sessions, services, database, http_client, router):
    verifier = FakeVerifier(error=ConnectionError("rpc down"))
    engine = CompletionEngine(sessions, verifier, TransactionLedger(database), http_client, escrow_address=ESCROW)
    router.add("primary.test", service_route(services[0].provider))
    session_id = await ready_session(sessions, services[0])

    with pytest.raises(InfrastructureError):
        await engine.complete(session_id, VALID_TX_HASH)

    assert sessions.get(session_id).status == SessionStatus.PAYMENT_READY
    assert rows(database) == []

    verifier.error = None
    result = await engine.complete(session_id, VALID_TX_HASH)
    assert result.success is True


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", ["", "0x123", "ab" * 32, "0x" + "zz" * 32])
async def test_malformed_signature_rejected_before_verification(engine, sessions, services, verifier, signature):
    session_id = await ready_session(sessions, services[0])

    with pytest.raises(InputValidationError):
        await engine.complete(session_id, signature)

    assert verifier.calls == []
    assert sessions.get(session_id).status == SessionStatus.PAYMENT_READY


@pytest.mark.asyncio
async def test_proof_cannot_pay_for_two_sessions(engine, sessions, services, router):
    router.add("primary.test", service_route(services[0].provider))
    first = await ready_session(sessions, services[0])
    second = await ready_session(sessions, services[0])

    await engine.complete(first, VALID_TX_HASH)

    with pytest.raises(PaymentVerificationError, match="already used"):
        await engine.complete(second, VALID_TX_HASH.upper().replace("0X", "0x"))

    result = await engine.complete(second, OTHER_TX_HASH)
    assert result.success is True


@pytest.mark.asyncio
async def test_concurrent_completion_runs_service_once(engine, sessions, services, router):
    router.add("primary.test", service_route(services[0].provider))
    session_id = await ready_session(sessions, services[0])

    results = await asyncio.gather(
        engine.complete(session_id, VALID_TX_HASH),
        engine.complete(session_id, VALID_TX_HASH),
        return_exceptions=True,
    )

    assert sum(isinstance(r, SessionStateError) for r in results) == 1
    assert len(router.requests_to("primary.test", "POST")) == 1


@pytest.mark.asyncio
async def test_ledger_outage_does_not_fail_completion(sessions, services, verifier, http_client, router):
    class BrokenStore:
        async def insert_transaction(self, record):
            raise ConnectionError("ledger down")

    engine = CompletionEngine(sessions, verifier, TransactionLedger(BrokenStore()), http_client, escrow_address=ESCROW)
    router.add("primary.test", service_route(services[0].provider))
    session_id = await ready_session(sessions, services[0])

    result = await engine.complete(session_id, VALID_TX_HASH)

    assert result.success is True


@pytest.fixture
def guard(database, clock):
    return SpendingLimitGuard(database, clock=clock)


@pytest.fixture
def guarded_engine(sessions, verifier, database, http_client, guard):
    return CompletionEngine(
        sessions, verifier, TransactionLedger(database), http_client, escrow_address=ESCROW, guard=guard
    )


async def reserve(guard, sessions, session_id):
    await guard.set_limits("agent-1", daily="$1.00")
    await guard.reserve(
        "agent-1", Decimal("0.02"), key=session_id, expires_at=sessions.get(session_id).expires_at
    )
    assert guard.pending("agent-1") == Decimal("0.02")


@pytest.mark.asyncio
async def test_completion_releases_reservation(guarded_engine, guard, sessions, services, router):
    router.add("primary.test", service_route(services[0].provider))
    session_id = await ready_session(sessions, services[0])
    await reserve(guard, sessions, session_id)

    await guarded_engine.complete(session_id, VALID_TX_HASH)

    assert guard.pending("agent-1") == Decimal("0")


@pytest.mark.asyncio
async def test_failed_services_release_reservation(guarded_engine, guard, sessions, services, router):
    router.add("primary.test", service_route(services[0].provider, paid_status=500))
    session_id = await ready_session(sessions, services[0])
    await reserve(guard, sessions, session_id)

    with pytest.raises(ServiceExecutionError):
        await guarded_engine.complete(session_id, VALID_TX_HASH)

    assert guard.pending("agent-1") == Decimal("0")


@pytest.mark.asyncio
async def test_rejected_payment_releases_reservation(sessions, services, database, http_client, guard):
    verifier = FakeVerifier(VerificationResult(verified=False, error="No matching token transfer to recipient"))
    engine = CompletionEngine(sessions, verifier, TransactionLedger(database), http_client, guard=guard)
    session_id = await ready_session(sessions, services[0])
    await reserve(guard, sessions, session_id)

    with pytest.raises(PaymentVerificationError):
        await engine.complete(session_id, VALID_TX_HASH)

    assert guard.pending("agent-1") == Decimal("0")


@pytest.mark.asyncio
async def test_verifier_outage_keeps_reservation(sessions, services, database, http_client, guard):
    engine = CompletionEngine(
        sessions, FakeVerifier(error=ConnectionError("rpc down")), TransactionLedger(database), http_client, guard=guard
    )
    session_id = await ready_session(sessions, services[0])
    await reserve(guard, sessions, session_id)

    with pytest.raises(InfrastructureError):
        await engine.complete(session_id, VALID_TX_HASH)

    assert guard.pending("agent-1") == Decimal("0.02")


@pytest.mark.asyncio
async def test_unexpected_error_after_payment_fails_session(guarded_engine, guard, sessions, services, router, database):
    """A bug in the call path must not leave the paid session stuck"""
    async def explode(request):
        raise RuntimeError("boom")

    router.add("primary.test", explode)
    session_id = await ready_session(sessions, services[0])
    await reserve(guard, sessions, session_id)

    with pytest.raises(ServiceExecutionError) as exc:
        await guarded_engine.complete(session_id, VALID_TX_HASH)

    assert exc.value.message == "Service failed after payment"
    assert exc.value.details["payment_verified"] is True
    assert exc.value.details["error"] == "boom"
    assert isinstance(exc.value.__cause__, RuntimeError)

    session = sessions.get(session_id)
    assert session.status == SessionStatus.FAILED
    assert session.last_error == "boom"
    assert len(rows(database, TransactionStatus.FAILED)) == 1
    assert guard.pending("agent-1") == Decimal("0")


@pytest.mark.asyncio
async def test_invalid_url_falls_back_to_backup(engine, sessions, services, router):
    async def invalid(request):
        raise httpx.InvalidURL("Invalid URL")

    router.add("primary.test", invalid)
    router.add("backup-1.test", service_route(services[1].provider))
    session_id = await ready_session(sessions, services[0], services[1:])

    result = await engine.complete(session_id, VALID_TX_HASH)

    assert result.service.id == "backup-1"
    assert result.metadata.primary_service_error == "Service request failed: Invalid URL"


@pytest.mark.asyncio
async def test_redeemed_proofs_are_bounded(sessions, verifier, database, http_client, services, router):
    engine = CompletionEngine(
        sessions, verifier, TransactionLedger(database), http_client, escrow_address=ESCROW, max_redeemed_proofs=1
    )
    router.add("primary.test", service_route(services[0].provider))

    await engine.complete(await ready_session(sessions, services[0]), VALID_TX_HASH)
    await engine.complete(await ready_session(sessions, services[0]), OTHER_TX_HASH)

    assert list(engine._redeemed) == [OTHER_TX_HASH]
