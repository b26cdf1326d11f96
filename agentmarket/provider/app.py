"""
x402 service provider application
Serves one paid endpoint plus a health check
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agentmarket.amounts import parse_price, to_base_units, USDC_DECIMALS
from agentmarket.config import get_provider_config
from agentmarket.logging_config import configure_logging
from agentmarket.models import PaymentInstruction
from agentmarket.payments.models import PaymentOption, PaymentProof, PaymentRequired
from agentmarket.payments.verifier import PaymentVerifier

logger = structlog.get_logger()

Handler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


def payment_required_response(requirement: PaymentRequired, error: Optional[str] = None) -> JSONResponse:
    body = requirement.model_copy(update={"error": error}) if error else requirement
    return JSONResponse(
        status_code=402,
        content=body.model_dump(mode="json", exclude_none=True),
        headers={"PAYMENT-REQUIRED": body.to_header()},
    )


def create_service_app(
    name: str,
    handler: Handler,
    price: Union[str, float],
    recipient: str,
    network: str = "base-sepolia",
    token: str = "USDC",
    decimals: int = USDC_DECIMALS,
    path: str = "/",
    verifier: Optional[PaymentVerifier] = None,
    accepted_recipients: Iterable[str] = (),
    description: Optional[str] = None,
) -> FastAPI:
    """
    Build a FastAPI app that charges ``price`` per call.

    Args:
        name: Service name, used as the app title
        handler: Called with the JSON request body once payment is presented
        price: Price per request ("$0.01")
        recipient: Wallet receiving payments
        verifier: When set, proofs are checked on-chain before the handler runs
        accepted_recipients: Extra payees a proof may name, e.g. a marketplace escrow
    """
    amount = to_base_units(parse_price(price), decimals)
    recipients = {recipient.lower(), *(r.lower() for r in accepted_recipients)}

    requirement = PaymentRequired(
        accepts=[PaymentOption(network=network, recipient=recipient, amount=amount, token=token)],
        description=description or f"{name} service",
    )

    app = FastAPI(title=name, description=description or f"{name} (x402)")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": name}

    @app.post(path)
    async def call_service(request: Request):
        header = request.headers.get("X-PAYMENT")
        if not header:
            return payment_required_response(requirement)

        try:
            proof = PaymentProof.decode(header)
        except ValueError:
            return payment_required_response(requirement, error="Invalid payment header")

        if not proof.signature:
            return payment_required_response(requirement, error="Payment proof has no signature")

        if verifier is not None:
            paid_to = str(proof.payload.get("recipient") or recipient)
            if paid_to.lower() not in recipients:
                return payment_required_response(requirement, error="Payment made to an unknown recipient")

            instruction = PaymentInstruction(
                amount=amount,
                decimals=decimals,
                token=token,
                recipient=paid_to,
                payee=recipient,
                network=network,
            )
            result = await verifier.verify_payment(proof.signature, instruction)
            if not result.verified:
                logger.warning("provider_payment_rejected", service=name, error=result.error)
                return payment_required_response(requirement, error=result.error or "Payment verification failed")

        try:
            body = await request.json()
        except ValueError:
            body = {}

        output = handler(body)
        if inspect.isawaitable(output):
            output = await output

        logger.info("provider_request_served", service=name, tx_hash=proof.signature)
        return output

    return app


POSITIVE_WORDS = {"good", "great", "love", "excellent", "happy", "amazing", "wonderful", "best"}
NEGATIVE_WORDS = {"bad", "terrible", "hate", "awful", "sad", "worst", "poor", "horrible"}


def analyze_sentiment(body: Dict[str, Any]) -> Dict[str, Any]:
    """Keyword sentiment scorer used by the bundled example provider"""
    words = str(body.get("text", "")).lower().split()
    score = sum(w in POSITIVE_WORDS for w in words) - sum(w in NEGATIVE_WORDS for w in words)
    label = "positive" if score > 0 else "negative" if score < 0 else "neutral"
    return {"sentiment": label, "score": score}


def create_app() -> FastAPI:
    """App factory for uvicorn, configured from the environment"""
    config = get_provider_config()
    return create_service_app(
        name=config.provider_name,
        handler=analyze_sentiment,
        price=config.provider_price,
        recipient=config.provider_address,
        network=config.network,
    )


if __name__ == "__main__":
    import uvicorn
    config = get_provider_config()
    configure_logging(config.log_level, config.log_format)

    uvicorn.run(
        "agentmarket.provider.app:create_app",
        factory=True,
        host=config.provider_host,
        port=config.provider_port,
    )
