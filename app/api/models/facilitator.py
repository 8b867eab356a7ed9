# app/api/models/facilitator.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SupportedKind(BaseModel):
    """
    A single scheme/network pair accepted by the facilitator.
    """
    scheme: str
    network: str


class SupportedResponse(BaseModel):
    """
    Response model for the facilitator discovery endpoint.
    """
    kinds: List[SupportedKind]


class VerifyRequest(BaseModel):
    """
    Request body for POST /facilitator/verify.

    Both parts are kept as raw JSON values here and validated by the endpoint so
    that malformed input (including non-objects) produces an `isValid: false`
    answer instead of a 422.
    """
    payment: Optional[Any] = None
    paymentRequirements: Optional[Any] = None


class VerifyResponse(BaseModel):
    """
    Response model for POST /facilitator/verify.
    """
    isValid: bool
    transactionId: Optional[str] = None
    reason: Optional[str] = None


class SettleRequest(BaseModel):
    """
    Request body for POST /facilitator/settle.
    """
    transactionId: str = Field(..., min_length=1)
    payment: Optional[Dict[str, Any]] = None


class SettleResponse(BaseModel):
    """
    Response model for POST /facilitator/settle.
    """
    success: bool
    transactionId: str
    network: str
