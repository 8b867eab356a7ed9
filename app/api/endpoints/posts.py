# app/api/endpoints/posts.py
from fastapi import APIRouter, HTTPException, Path, Request
from requests.exceptions import RequestException
import logging

from app.core.config import settings
from app.api.models.post import PaymentStatusResponse
from app.x402.gate import GateAction, get_gate, session_cookie_name
from app.x402.middleware import PAYMENT_STATE_ATTR
from app.x402.resources import ResourceLookupError, get_resource_lookup

logger = logging.getLogger(__name__)

# /api/posts/... JSON endpoints
router = APIRouter()

# /post/<id> document endpoint, gated by the x402 middleware
page_router = APIRouter()

UNLOCKING_STATES = {
    GateAction.UNPROTECTED.value,
    GateAction.SESSION.value,
    GateAction.GRANTED.value,
}


@router.get("/{post_id}/payment-status", response_model=PaymentStatusResponse)
def get_payment_status(
    request: Request,
    post_id: str = Path(..., min_length=1, description="Post identifier")
) -> PaymentStatusResponse:
    """
    Tell the page whether the current client already paid for a post.

    Uses the same session check as the payment gate.
    """
    token = request.cookies.get(session_cookie_name(post_id))
    try:
        has_paid = get_gate().session_is_valid(token, post_id)
    except Exception as e:
        logger.error(f"Error checking payment status for {post_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to check payment status")

    return PaymentStatusResponse(hasPaid=has_paid)


@page_router.get("/{post_id}")
def get_post(
    request: Request,
    post_id: str = Path(..., min_length=1, description="Post identifier")
) -> dict:
    """
    Serve a post, withholding paid content until the gate unlocked it.

    Returns:
        The full post, or its preview with `paymentRequired: true`

    Raises:
        HTTPException: 404 if the post does not exist, 502 if the content
        service is unavailable
    """
    try:
        resource = get_resource_lookup().lookup(post_id)
    except RequestException as e:
        logger.error(f"Failed to fetch post {post_id}: {e}")
        raise HTTPException(status_code=502, detail="Content service unavailable")
    except ResourceLookupError as e:
        logger.error(f"Invalid post {post_id}: {e}")
        raise HTTPException(status_code=500, detail="Invalid post data")

    if resource is None:
        raise HTTPException(status_code=404, detail="Post not found")

    access = getattr(request.state, PAYMENT_STATE_ATTR, None)
    unlocked = (
        not resource.is_protected
        or access in UNLOCKING_STATES
        or (access is None and not settings.X402_ENABLED)
    )

    if unlocked:
        return resource.full()

    return {**resource.preview(), "paymentRequired": True}
