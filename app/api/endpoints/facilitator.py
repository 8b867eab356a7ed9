# app/api/endpoints/facilitator.py
from fastapi import APIRouter
from fastapi.responses import JSONResponse
import logging

from app.core.config import settings
from app.api.models.facilitator import (
    SettleRequest,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyRequest,
    VerifyResponse,
)
from app.x402 import audit
from app.x402.ledger import get_ledger_oracle
from app.x402.models import (
    X402_VERSION,
    PaymentClaim,
    PaymentRequirement,
    VerificationReason,
    short_ref,
)
from app.x402.verifier import confirm_on_ledger, match_requirement

logger = logging.getLogger(__name__)

router = APIRouter()


def _invalid(reason: VerificationReason) -> VerifyResponse:
    return VerifyResponse(isValid=False, reason=reason.value)


@router.get("/supported", response_model=SupportedResponse)
async def get_supported() -> SupportedResponse:
    """
    Declare the single scheme/network pair this deployment accepts.
    """
    return SupportedResponse(
        kinds=[SupportedKind(scheme=settings.X402_SCHEME, network=settings.X402_NETWORK)]
    )


@router.post("/verify", response_model=VerifyResponse)
def verify_payment(body: VerifyRequest):
    """
    Verify a payment claim against payment requirements.

    Re-validates recipient, asset and amount independently of the caller and
    then confirms the transaction on the ledger. Malformed input is answered
    with `isValid: false` rather than an HTTP error.
    """
    if not isinstance(body.payment, dict) or not isinstance(body.paymentRequirements, dict):
        return _invalid(VerificationReason.INVALID_STRUCTURE)

    if not body.payment or not body.paymentRequirements:
        return _invalid(VerificationReason.INVALID_STRUCTURE)

    try:
        claim = PaymentClaim.model_validate(body.payment)
        requirement = PaymentRequirement.model_validate(body.paymentRequirements)
    except ValueError as e:
        logger.warning(f"Facilitator received malformed verify request: {e}")
        return _invalid(VerificationReason.INVALID_STRUCTURE)

    if not claim.reference:
        return _invalid(VerificationReason.INVALID_STRUCTURE)

    if (
        claim.x402_version != X402_VERSION
        or claim.scheme != settings.X402_SCHEME
        or claim.network != settings.X402_NETWORK
        or requirement.scheme != settings.X402_SCHEME
        or requirement.network != settings.X402_NETWORK
    ):
        return _invalid(VerificationReason.UNSUPPORTED_SCHEME)

    try:
        rejected = match_requirement(claim, requirement)
        if rejected is None:
            rejected = confirm_on_ledger(get_ledger_oracle(), claim.reference)
    except Exception as e:
        logger.error(f"Facilitator verification error: {e}")
        return JSONResponse(
            status_code=500,
            content=_invalid(VerificationReason.INTERNAL_ERROR).model_dump()
        )

    if rejected is not None:
        return _invalid(rejected.reason)

    logger.info(f"Facilitator verified transaction {short_ref(claim.reference)}")
    return VerifyResponse(isValid=True, transactionId=claim.reference)


@router.post("/settle", response_model=SettleResponse)
def settle_payment(body: SettleRequest) -> SettleResponse:
    """
    Acknowledge settlement of a verified payment.

    The transfer is already on-chain when the client submits its claim, so
    settlement only records the event for reconciliation.
    """
    payload = body.payment.get("payload") if body.payment else None
    payer = payload.get("from") if isinstance(payload, dict) else None

    audit.log_payment_settled(
        transaction_id=body.transactionId,
        network=settings.X402_NETWORK,
        payer=payer,
    )
    logger.info(f"Facilitator settlement recorded for {short_ref(body.transactionId)}")

    return SettleResponse(
        success=True,
        transactionId=body.transactionId,
        network=settings.X402_NETWORK,
    )
