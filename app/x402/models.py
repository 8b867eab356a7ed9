# app/x402/models.py
"""
Data model for x402 payment verification.

PaymentClaim is decoded from the attacker-controlled X-PAYMENT header, so every
field is required and strictly typed: a missing field or a number where a string
is expected fails validation instead of being coerced.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from pydantic import AliasChoices, BaseModel, Field, StrictInt, StrictStr

from x402.encoding import safe_base64_decode

logger = logging.getLogger(__name__)

X402_VERSION = 1


class VerificationReason(str, Enum):
    """Why a payment claim was rejected."""
    INVALID_STRUCTURE = "InvalidStructure"
    UNSUPPORTED_SCHEME = "UnsupportedScheme"
    RECIPIENT_MISMATCH = "RecipientMismatch"
    ASSET_MISMATCH = "AssetMismatch"
    AMOUNT_MISMATCH = "AmountMismatch"
    REFERENCE_ALREADY_USED = "ReferenceAlreadyUsed"
    TRANSACTION_NOT_FOUND = "TransactionNotFound"
    TRANSACTION_FAILED = "TransactionFailed"
    FACILITATOR_UNREACHABLE = "FacilitatorUnreachable"
    INTERNAL_ERROR = "InternalError"


class PaymentRequirement(BaseModel):
    """
    Terms a client must satisfy to unlock one resource.

    `amount` is expressed in the asset's smallest unit (an integer as a string),
    serialized as `maxAmountRequired` on the wire.
    """
    scheme: StrictStr
    network: StrictStr
    amount: StrictStr = Field(
        validation_alias=AliasChoices("maxAmountRequired", "amount"),
        serialization_alias="maxAmountRequired",
    )
    asset: StrictStr
    pay_to: StrictStr = Field(
        validation_alias=AliasChoices("payTo", "pay_to"),
        serialization_alias="payTo",
    )

    class Config:
        frozen = True
        populate_by_name = True

    def to_wire(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


class ClaimPayload(BaseModel):
    reference: StrictStr = Field(
        validation_alias=AliasChoices("reference", "signature"),
        serialization_alias="reference",
    )
    from_address: StrictStr = Field(
        validation_alias=AliasChoices("from", "from_address"),
        serialization_alias="from",
    )
    to: StrictStr
    amount: StrictStr
    asset: StrictStr = Field(
        validation_alias=AliasChoices("asset", "token"),
        serialization_alias="asset",
    )

    class Config:
        frozen = True
        populate_by_name = True


class PaymentClaim(BaseModel):
    """A payment claim as sent by the client in the X-PAYMENT header."""
    x402_version: StrictInt = Field(
        validation_alias=AliasChoices("x402Version", "x402_version"),
        serialization_alias="x402Version",
    )
    scheme: StrictStr
    network: StrictStr
    payload: ClaimPayload

    class Config:
        frozen = True
        populate_by_name = True

    @property
    def reference(self) -> str:
        return self.payload.reference

    def to_wire(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True)


class VerificationOutcome(BaseModel):
    """Result of a single verification attempt."""
    valid: bool
    reference: Optional[str] = None
    reason: Optional[VerificationReason] = None
    detail: Optional[str] = None

    class Config:
        frozen = True

    @classmethod
    def accepted(cls, reference: str) -> "VerificationOutcome":
        return cls(valid=True, reference=reference)

    @classmethod
    def rejected(
        cls,
        reason: VerificationReason,
        detail: Optional[str] = None,
        reference: Optional[str] = None
    ) -> "VerificationOutcome":
        return cls(valid=False, reason=reason, detail=detail, reference=reference)


@dataclass(frozen=True)
class ReplayRecord:
    """A reference that has already been verified, optionally scoped to one resource."""
    reference: str
    verified_at: float
    resource_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class ClaimDecodeError(ValueError):
    """The X-PAYMENT header could not be decoded into a PaymentClaim."""


def decode_payment_header(header_value: str) -> PaymentClaim:
    """
    Decode the X-PAYMENT header into a PaymentClaim.

    Accepts plain JSON as well as base64-encoded JSON (the form the x402 SDKs send).

    Args:
        header_value: Raw header value

    Returns:
        The validated PaymentClaim

    Raises:
        ClaimDecodeError: If the header is not valid JSON or fails schema validation
    """
    raw = (header_value or "").strip()
    if not raw:
        raise ClaimDecodeError("X-PAYMENT header is empty")

    try:
        if not raw.startswith("{"):
            raw = safe_base64_decode(raw)
        payload_dict = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise ClaimDecodeError(f"X-PAYMENT header is not valid JSON: {e}") from e

    if not isinstance(payload_dict, dict):
        raise ClaimDecodeError("X-PAYMENT header must be a JSON object")

    try:
        return PaymentClaim.model_validate(payload_dict)
    except ValueError as e:
        # pydantic.ValidationError subclasses ValueError
        raise ClaimDecodeError(f"X-PAYMENT header failed validation: {e}") from e


def short_ref(reference: Optional[str]) -> str:
    """Truncate a reference for log lines."""
    if not reference:
        return "<none>"
    return reference[:20] + "..." if len(reference) > 20 else reference
