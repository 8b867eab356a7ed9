# app/x402/verifier.py
"""
Payment claim verification.

A claim is checked, in order and stopping at the first failure:
1. Structure: the claim must carry a non-empty reference
2. Idempotence: a reference already verified for this resource is accepted
   without touching the ledger; one verified for a different resource is
   rejected, also without touching the ledger
3. Field equality: recipient, asset and amount must equal the requirement
   exactly (amounts are smallest-unit integer strings, compared as strings)
4. Ledger confirmation: the reference must exist on-chain and have succeeded
5. The success is recorded in the replay cache, scoped to the resource
   (atomically, so a concurrent claim for another resource loses)
6. A settlement notification is dispatched in the background
"""
import logging
from typing import Optional

from requests.exceptions import RequestException

from app.core.config import settings
from app.x402.facilitator import FacilitatorClient, FacilitatorError, SettlementNotifier
from app.x402.ledger import LedgerError, LedgerOracle
from app.x402.models import (
    PaymentClaim,
    PaymentRequirement,
    VerificationOutcome,
    VerificationReason,
    short_ref,
)
from app.x402.replay import ReplayCache

logger = logging.getLogger(__name__)


def _already_used(reference: str) -> VerificationOutcome:
    return VerificationOutcome.rejected(
        VerificationReason.REFERENCE_ALREADY_USED,
        "Payment already used for another resource",
        reference=reference,
    )


def match_requirement(
    claim: PaymentClaim,
    requirement: PaymentRequirement
) -> Optional[VerificationOutcome]:
    """
    Compare the claim's declared transfer with the requirement.

    Returns:
        A rejected outcome for the first mismatching field, or None if all match
    """
    payload = claim.payload

    if payload.to != requirement.pay_to:
        return VerificationOutcome.rejected(
            VerificationReason.RECIPIENT_MISMATCH,
            "Invalid recipient address",
            reference=payload.reference,
        )

    if payload.asset != requirement.asset:
        return VerificationOutcome.rejected(
            VerificationReason.ASSET_MISMATCH,
            "Invalid token mint",
            reference=payload.reference,
        )

    if payload.amount != requirement.amount:
        return VerificationOutcome.rejected(
            VerificationReason.AMOUNT_MISMATCH,
            f"Invalid payment amount: expected {requirement.amount}, got {payload.amount}",
            reference=payload.reference,
        )

    return None


def confirm_on_ledger(ledger: LedgerOracle, reference: str) -> Optional[VerificationOutcome]:
    """
    Confirm a reference against the ledger.

    Timeouts, transport failures and RPC errors count as "not found".

    Returns:
        A rejected outcome, or None if the transaction exists and succeeded
    """
    try:
        transaction = ledger.lookup(reference)
    except (RequestException, LedgerError) as e:
        logger.warning(f"Ledger lookup failed for {short_ref(reference)}: {e}")
        return VerificationOutcome.rejected(
            VerificationReason.TRANSACTION_NOT_FOUND,
            "Transaction not found",
            reference=reference,
        )

    if not transaction.found:
        return VerificationOutcome.rejected(
            VerificationReason.TRANSACTION_NOT_FOUND,
            "Transaction not found",
            reference=reference,
        )

    if not transaction.succeeded:
        return VerificationOutcome.rejected(
            VerificationReason.TRANSACTION_FAILED,
            "Transaction failed on-chain",
            reference=reference,
        )

    return None


class Verifier:
    """
    Decides whether a payment claim satisfies a requirement.

    Collaborators are injected so tests can substitute fakes. Exactly one of the
    ledger oracle or the facilitator performs step 4, depending on
    `use_facilitator`.
    """

    def __init__(
        self,
        cache: ReplayCache,
        ledger: Optional[LedgerOracle] = None,
        facilitator: Optional[FacilitatorClient] = None,
        settlement: Optional[SettlementNotifier] = None,
        use_facilitator: Optional[bool] = None
    ):
        self._cache = cache
        self._ledger = ledger
        self._facilitator = facilitator
        self._settlement = settlement
        self._use_facilitator = use_facilitator

    @property
    def use_facilitator(self) -> bool:
        if self._use_facilitator is not None:
            return self._use_facilitator
        return settings.X402_VERIFY_VIA_FACILITATOR

    def verify(
        self,
        claim: PaymentClaim,
        requirement: PaymentRequirement,
        resource_id: Optional[str] = None
    ) -> VerificationOutcome:
        """
        Verify a claim for one resource.

        Never raises: unexpected errors produce an InternalError outcome.
        """
        try:
            return self._verify(claim, requirement, resource_id)
        except Exception as e:
            logger.error(f"Payment verification error: {e}")
            return VerificationOutcome.rejected(
                VerificationReason.INTERNAL_ERROR,
                str(e) or "Unknown error",
            )

    def _verify(
        self,
        claim: PaymentClaim,
        requirement: PaymentRequirement,
        resource_id: Optional[str]
    ) -> VerificationOutcome:
        reference = claim.payload.reference

        if not reference or not reference.strip():
            return VerificationOutcome.rejected(
                VerificationReason.INVALID_STRUCTURE,
                "Invalid payment structure",
            )

        if self._cache.has(reference, resource_id):
            logger.info(f"Payment {short_ref(reference)} already verified for {resource_id}")
            return VerificationOutcome.accepted(reference)

        existing = self._cache.get(reference)
        if existing is not None:
            logger.warning(
                f"Payment {short_ref(reference)} already used for {existing.resource_id}, "
                f"rejected for {resource_id}"
            )
            return _already_used(reference)

        mismatch = match_requirement(claim, requirement)
        if mismatch is not None:
            logger.warning(
                f"Payment {short_ref(reference)} rejected: {mismatch.reason.value}"
            )
            return mismatch

        if self.use_facilitator:
            rejected = self._confirm_with_facilitator(claim, requirement)
        else:
            if self._ledger is None:
                raise RuntimeError("No ledger oracle configured")
            rejected = confirm_on_ledger(self._ledger, reference)

        if rejected is not None:
            logger.warning(
                f"Payment {short_ref(reference)} rejected: {rejected.reason.value}"
            )
            return rejected

        payload = claim.payload
        recorded = self._cache.claim(
            reference,
            resource_id,
            {"from": payload.from_address, "to": payload.to, "amount": payload.amount},
        )
        if not recorded:
            logger.warning(f"Payment {short_ref(reference)} was claimed concurrently for another resource")
            return _already_used(reference)
        logger.info(f"Payment verified successfully: {short_ref(reference)}")

        self._notify_settlement(reference, claim)

        return VerificationOutcome.accepted(reference)

    def _confirm_with_facilitator(
        self,
        claim: PaymentClaim,
        requirement: PaymentRequirement
    ) -> Optional[VerificationOutcome]:
        if self._facilitator is None:
            raise RuntimeError("No facilitator client configured")

        reference = claim.payload.reference
        try:
            result = self._facilitator.verify(claim, requirement)
        except FacilitatorError as e:
            logger.error(f"Facilitator verification failed: {e}")
            return VerificationOutcome.rejected(
                VerificationReason.FACILITATOR_UNREACHABLE,
                str(e),
                reference=reference,
            )

        if result.isValid:
            return None

        try:
            reason = VerificationReason(result.reason)
        except ValueError:
            reason = VerificationReason.INTERNAL_ERROR

        return VerificationOutcome.rejected(
            reason,
            result.reason or "Payment verification failed",
            reference=reference,
        )

    def _notify_settlement(self, reference: str, claim: PaymentClaim) -> None:
        if self._settlement is None:
            return
        try:
            self._settlement.notify(reference, claim)
        except Exception as e:
            logger.warning(f"Could not dispatch settlement for {short_ref(reference)}: {e}")
