# app/x402/middleware.py
"""
FastAPI middleware for x402 payment-gated resources.

This module provides HTTP middleware that:
1. Intercepts requests under X402_PROTECTED_PATH_PREFIX (e.g. /post/<id>)
2. Runs them through the Gate (session cookie, then X-PAYMENT header)
3. Returns 402 Payment Required to machine clients that have not paid
4. Issues a hardened session cookie once a payment is verified

Browser (document) requests without payment are forwarded so the page can
render its own payment prompt; the content endpoint withholds paid fields.
"""
import json
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_encode

from app.core.config import settings
from app.x402 import audit
from app.x402.gate import (
    Gate,
    GateAction,
    GateDecision,
    ResponseStrategy,
    classify_request,
    get_gate,
    session_cookie_name,
)
from app.x402.models import X402_VERSION, VerificationReason, short_ref

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# request.state attribute telling endpoints whether paid content may be served
PAYMENT_STATE_ATTR = "x402_access"


def extract_resource_id(path: str, prefix: Optional[str] = None) -> Optional[str]:
    """Extract the resource id from a protected path, e.g. /post/<id>/... -> <id>."""
    prefix = prefix or settings.X402_PROTECTED_PATH_PREFIX
    if not path.startswith(prefix) or path.startswith(settings.API_PREFIX + "/"):
        return None

    resource_id = path[len(prefix):].split("/")[0]
    return resource_id or None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def build_denial_body(decision: GateDecision) -> dict:
    """
    Build the structured 402 body for a challenge or a failed verification.

    The resource preview never contains paid content.
    """
    resource = decision.resource
    requirement = decision.requirement

    body = {
        "x402Version": X402_VERSION,
        "error": "Payment required",
        "resourceId": decision.resource_id,
        "paymentAmount": resource.paymentAmount if resource else None,
        "paymentCurrency": resource.paymentCurrency if resource else None,
        "payTo": requirement.pay_to if requirement else None,
        "resource": resource.preview() if resource else None,
        "accepts": [requirement.to_wire()] if requirement else [],
    }

    if decision.action is GateAction.DENIED and decision.outcome is not None:
        body["error"] = "Payment verification failed"
        body["reason"] = decision.outcome.reason.value if decision.outcome.reason else None
        body["detail"] = decision.outcome.detail

    return body


def create_402_response(decision: GateDecision) -> JSONResponse:
    """Create an HTTP 402 Payment Required response for a decision."""
    return JSONResponse(status_code=402, content=build_denial_body(decision))


def encode_payment_response(reference: str, network: str) -> str:
    """
    Encode the X-PAYMENT-RESPONSE header for a granted payment.

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps({
        "success": True,
        "transaction": reference,
        "network": network,
    })
    return safe_base64_encode(response_json.encode("utf-8"))


def set_session_cookie(response: Response, resource_id: str, token: str) -> None:
    """Attach the hardened session cookie for a resource."""
    response.set_cookie(
        key=session_cookie_name(resource_id),
        value=token,
        max_age=settings.X402_SESSION_MAX_AGE_SECONDS,
        path="/",
        httponly=True,
        secure=settings.X402_SESSION_COOKIE_SECURE,
        samesite="lax",
    )


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate middleware for FastAPI.

    When X402_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(self, app, gate: Optional[Gate] = None):
        super().__init__(app)
        self._gate = gate

    @property
    def gate(self) -> Gate:
        """The injected gate, or the process-wide one."""
        if self._gate is not None:
            return self._gate
        return get_gate()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        resource_id = extract_resource_id(request.url.path)
        if resource_id is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        strategy = classify_request(
            request.headers.get("Accept"),
            request.headers.get("User-Agent"),
        )
        logger.info(
            f"x402: Processing {strategy.value} request from {client_ip}: "
            f"{request.method} {request.url.path}"
        )
        request_id = audit.log_request_received(
            client_ip, request.method, request.url.path, resource_id
        )

        decision = await run_in_threadpool(
            self.gate.evaluate,
            resource_id,
            session_token=request.cookies.get(session_cookie_name(resource_id)),
            payment_header=request.headers.get(X_PAYMENT_HEADER),
            strategy=strategy,
        )
        setattr(request.state, PAYMENT_STATE_ATTR, decision.action.value)

        if decision.action is GateAction.UNPROTECTED:
            return await call_next(request)

        if decision.action is GateAction.SESSION:
            logger.info(f"x402: Session cookie accepted for {resource_id}")
            audit.log_session_accepted(client_ip, resource_id, request_id=request_id)
            return await call_next(request)

        if decision.action is GateAction.CHALLENGED:
            if strategy is ResponseStrategy.DOCUMENT:
                # The page renders its own payment prompt
                return await call_next(request)

            logger.info(f"x402: No X-PAYMENT header, returning 402 for {resource_id}")
            audit.log_payment_required_sent(
                client_ip,
                resource_id,
                decision.requirement.amount,
                decision.resource.paymentCurrency,
                decision.requirement.network,
                decision.requirement.pay_to,
                request_id=request_id,
            )
            return create_402_response(decision)

        if decision.action is GateAction.DENIED:
            reason = decision.outcome.reason.value if decision.outcome.reason else "unknown"
            logger.warning(f"x402: Payment verification failed for {resource_id}: {reason}")
            audit.log_payment_failed(
                client_ip, resource_id, reason, "verify", decision.outcome.detail,
                request_id=request_id,
            )
            if decision.outcome.reason == VerificationReason.INTERNAL_ERROR:
                audit.log_error(
                    client_ip,
                    "verification_error",
                    decision.outcome.detail or "unknown",
                    context={"resource_id": resource_id},
                    request_id=request_id,
                )
            return create_402_response(decision)

        # Granted
        token = decision.session_token
        logger.info(f"x402: Payment {short_ref(token)} verified, granting {resource_id}")
        audit.log_payment_verified(client_ip, resource_id, token, request_id=request_id)

        response = await call_next(request)
        set_session_cookie(response, resource_id, token)
        response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(
            token, decision.requirement.network
        )
        return response
