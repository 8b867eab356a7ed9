# app/x402/gate.py
"""
Request-interception decision engine for payment-gated resources.

For each request to a protected path the gate walks a small state machine:

    Unprotected      -> forward, nothing verified
    CheckingSession  -> a valid session cookie forwards the request
    CheckingClaim    -> no X-PAYMENT header means a challenge
    Verifying        -> the claim is verified; grant on success, deny otherwise

The gate itself does no HTTP: it returns a GateDecision and the middleware turns
it into a response. Blocking collaborator calls happen inside evaluate(), which
the middleware runs in the threadpool.
"""
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from app.core.config import settings
from app.x402.facilitator import FacilitatorClient, get_settlement_notifier
from app.x402.ledger import get_ledger_oracle
from app.x402.models import (
    X402_VERSION,
    ClaimDecodeError,
    PaymentRequirement,
    VerificationOutcome,
    VerificationReason,
    decode_payment_header,
    short_ref,
)
from app.x402.replay import ReplayCache, get_replay_cache
from app.x402.resources import (
    ProtectedResource,
    ResourceLookup,
    derive_requirement,
    get_resource_lookup,
)
from app.x402.verifier import Verifier

logger = logging.getLogger(__name__)

# Solana signatures are base58 encoded, typically 88 characters
BASE58_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")
MIN_REFERENCE_LENGTH = 32


class ResponseStrategy(str, Enum):
    """Which representation the client negotiated."""
    MACHINE = "machine"
    DOCUMENT = "document"


class GateAction(Enum):
    UNPROTECTED = "unprotected"
    SESSION = "session"
    CHALLENGED = "challenged"
    DENIED = "denied"
    GRANTED = "granted"


@dataclass(frozen=True)
class GateDecision:
    """Terminal state of one pass through the gate."""
    action: GateAction
    resource_id: str
    strategy: ResponseStrategy
    resource: Optional[ProtectedResource] = None
    requirement: Optional[PaymentRequirement] = None
    outcome: Optional[VerificationOutcome] = None

    @property
    def session_token(self) -> Optional[str]:
        """The token to issue as a session cookie (grants only)."""
        if self.action is GateAction.GRANTED and self.outcome is not None:
            return self.outcome.reference
        return None

    @property
    def forwards(self) -> bool:
        """Whether the original request reaches the endpoint unmodified."""
        if self.action in (GateAction.UNPROTECTED, GateAction.SESSION, GateAction.GRANTED):
            return True
        return self.action is GateAction.CHALLENGED and self.strategy is ResponseStrategy.DOCUMENT


def classify_request(accept: Optional[str], user_agent: Optional[str]) -> ResponseStrategy:
    """
    Decide whether the client wants a machine (JSON) or a document (HTML) response.

    Browsers either ask for text/html or send a Mozilla user agent without
    asking for JSON.
    """
    accept = accept or ""
    user_agent = user_agent or ""

    if "text/html" in accept:
        return ResponseStrategy.DOCUMENT
    if "application/json" not in accept and "Mozilla" in user_agent:
        return ResponseStrategy.DOCUMENT
    return ResponseStrategy.MACHINE


def session_cookie_name(resource_id: str, prefix: Optional[str] = None) -> str:
    """Cookie name holding the session token for one resource."""
    return f"{prefix or settings.X402_SESSION_COOKIE_PREFIX}_{resource_id}"


def looks_like_reference(token: Optional[str]) -> bool:
    """Whether a token has the shape of a base58 transaction signature."""
    if not token or len(token) < MIN_REFERENCE_LENGTH:
        return False
    return bool(BASE58_PATTERN.match(token))


class Gate:
    """Per-request payment gate. Holds no per-request state."""

    def __init__(
        self,
        resources: ResourceLookup,
        verifier: Verifier,
        cache: ReplayCache,
        trust_token_format: Optional[bool] = None
    ):
        self._resources = resources
        self._verifier = verifier
        self._cache = cache
        self._trust_token_format = trust_token_format

    @property
    def trust_token_format(self) -> bool:
        if self._trust_token_format is not None:
            return self._trust_token_format
        return settings.X402_TRUST_TOKEN_FORMAT

    def resolve(self, resource_id: str) -> Tuple[Optional[ProtectedResource], Optional[PaymentRequirement]]:
        """
        Look up a resource and derive its requirement.

        Fails open: any lookup or derivation error is logged and the resource is
        treated as unprotected.
        """
        try:
            resource = self._resources.lookup(resource_id)
            if resource is None:
                return None, None
            return resource, derive_requirement(resource)
        except Exception as e:
            logger.error(f"Error resolving payment requirements for {resource_id}: {e}")
            return None, None

    def session_is_valid(self, token: Optional[str], resource_id: str) -> bool:
        """Check a session token against the replay cache (and the format shim if enabled)."""
        if not token:
            return False

        if self._cache.has(token, resource_id):
            return True

        if self.trust_token_format and looks_like_reference(token):
            logger.warning(
                f"Accepting unverified session token {short_ref(token)} for {resource_id} by format"
            )
            return True

        return False

    def evaluate(
        self,
        resource_id: str,
        session_token: Optional[str] = None,
        payment_header: Optional[str] = None,
        strategy: ResponseStrategy = ResponseStrategy.MACHINE
    ) -> GateDecision:
        """Run one request through the gate."""
        resource, requirement = self.resolve(resource_id)
        if requirement is None:
            return GateDecision(GateAction.UNPROTECTED, resource_id, strategy, resource=resource)

        def decide(action: GateAction, outcome: Optional[VerificationOutcome] = None) -> GateDecision:
            return GateDecision(
                action, resource_id, strategy,
                resource=resource, requirement=requirement, outcome=outcome,
            )

        if self.session_is_valid(session_token, resource_id):
            return decide(GateAction.SESSION)

        if not payment_header:
            return decide(GateAction.CHALLENGED)

        try:
            claim = decode_payment_header(payment_header)
        except ClaimDecodeError as e:
            logger.warning(f"Invalid X-PAYMENT header for {resource_id}: {e}")
            return decide(GateAction.DENIED, VerificationOutcome.rejected(
                VerificationReason.INVALID_STRUCTURE, "Invalid X-PAYMENT header format"
            ))

        if (
            claim.x402_version != X402_VERSION
            or claim.scheme != requirement.scheme
            or claim.network != requirement.network
        ):
            return decide(GateAction.DENIED, VerificationOutcome.rejected(
                VerificationReason.UNSUPPORTED_SCHEME,
                f"Unsupported payment kind: v{claim.x402_version} {claim.scheme}/{claim.network}",
                reference=claim.reference,
            ))

        try:
            outcome = self._verifier.verify(claim, requirement, resource_id)
        except Exception as e:
            logger.error(f"Payment verification error for {resource_id}: {e}")
            outcome = VerificationOutcome.rejected(VerificationReason.INTERNAL_ERROR, str(e))

        if outcome.valid:
            return decide(GateAction.GRANTED, outcome)
        return decide(GateAction.DENIED, outcome)


def build_gate() -> Gate:
    """Wire a gate from the process-wide collaborators."""
    cache = get_replay_cache()
    verifier = Verifier(
        cache=cache,
        ledger=get_ledger_oracle(),
        facilitator=FacilitatorClient(),
        settlement=get_settlement_notifier(),
    )
    return Gate(resources=get_resource_lookup(), verifier=verifier, cache=cache)


_gate: Optional[Gate] = None
_gate_lock = threading.Lock()


def get_gate() -> Gate:
    """Get the process-wide gate."""
    global _gate

    if _gate is None:
        with _gate_lock:
            if _gate is None:
                _gate = build_gate()

    return _gate


def reset_gate() -> None:
    """Drop the process-wide gate (useful for testing)."""
    global _gate
    with _gate_lock:
        _gate = None
