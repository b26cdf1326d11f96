"""
Pytest configuration and shared fixtures
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
from eth_account import Account

from agentmarket.database.memory import InMemoryDatabase
from agentmarket.payments.models import PaymentOption, PaymentRequired, VerificationResult
from agentmarket.sessions.manager import SessionManager

VALID_TX_HASH = "0x" + "ab" * 32
OTHER_TX_HASH = "0x" + "cd" * 32

RouteHandler = Callable[[httpx.Request], Awaitable[httpx.Response]]


class FakeClock:
    """Controllable UTC clock"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class HostRouter:
    """
    Async handler for httpx.MockTransport that dispatches on the request host.
    Unrouted hosts fail like an unreachable service.
    """

    def __init__(self):
        self.routes: Dict[str, RouteHandler] = {}
        self.requests: List[httpx.Request] = []

    def add(self, host: str, handler: RouteHandler) -> None:
        self.routes[host] = handler

    def requests_to(self, host: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.host == host and (method is None or r.method == method)
        ]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            raise httpx.ConnectError("Connection refused", request=request)
        return await handler(request)


class FakeVerifier:
    """Records calls; returns a fixed result or raises a fixed error"""

    def __init__(self, result: Optional[VerificationResult] = None, error: Optional[Exception] = None):
        self.result = result or VerificationResult(verified=True, tx_hash=VALID_TX_HASH)
        self.error = error
        self.calls: List[Any] = []

    async def verify_payment(self, signature, instruction):
        self.calls.append((signature, instruction))
        if self.error is not None:
            raise self.error
        return self.result


def challenge_response(recipient: str, amount: int = 20000, network: str = "base-sepolia") -> httpx.Response:
    body = PaymentRequired(accepts=[PaymentOption(network=network, recipient=recipient, amount=amount)])
    return httpx.Response(402, json=body.model_dump(mode="json", exclude_none=True))


def service_route(
    recipient: str,
    amount: int = 20000,
    health: Any = None,
    paid_status: int = 200,
    paid_body: Any = None,
) -> RouteHandler:
    """
    Well-behaved x402 service: GET /health, 402 without proof, result with proof
    """
    health_body = health if health is not None else {"status": "healthy"}
    result_body = paid_body if paid_body is not None else {"sentiment": "positive"}

    async def handle(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=health_body)
        if "X-PAYMENT" not in request.headers:
            return challenge_response(recipient, amount)
        return httpx.Response(paid_status, json=result_body)

    return handle


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content)


@pytest.fixture
def test_account():
    """Create a test Ethereum account"""
    return Account.create()


@pytest.fixture
def test_buyer_account():
    """Create a test buyer account"""
    return Account.from_key("0xabcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def sessions(clock) -> SessionManager:
    return SessionManager(ttl_seconds=900, clock=clock)


@pytest.fixture
def router() -> HostRouter:
    return HostRouter()


@pytest.fixture
def http_client(router) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(router))


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()
