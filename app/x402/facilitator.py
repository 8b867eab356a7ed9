# app/x402/facilitator.py
"""
Client side of the x402 facilitator (POST /verify and POST /settle).

The facilitator encapsulates ledger access for network-separated deployments.
Verification through it is optional (X402_VERIFY_VIA_FACILITATOR); settlement
notifications are always best-effort and dispatched off the request path.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException

from app.core.config import settings
from app.api.models.facilitator import VerifyResponse
from app.x402.models import PaymentClaim, PaymentRequirement, short_ref

logger = logging.getLogger(__name__)


class FacilitatorError(Exception):
    """The facilitator could not be reached or answered with garbage."""


class FacilitatorClient:
    """HTTP client for a facilitator exposing /verify and /settle."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self._base_url = base_url
        self._timeout = timeout

    @property
    def base_url(self) -> Optional[str]:
        url = self._base_url or settings.X402_FACILITATOR_URL
        return str(url).rstrip("/") if url else None

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return settings.X402_FACILITATOR_TIMEOUT_SECONDS

    def _post(self, path: str, body: Dict[str, Any]) -> requests.Response:
        if not self.base_url:
            raise FacilitatorError("X402_FACILITATOR_URL not configured")

        url = f"{self.base_url}/{path}"
        try:
            return requests.post(url, json=body, timeout=self.timeout)
        except RequestException as e:
            raise FacilitatorError(f"Facilitator request to {url} failed: {e}") from e

    def verify(self, claim: PaymentClaim, requirement: PaymentRequirement) -> VerifyResponse:
        """
        Ask the facilitator to verify a claim against a requirement.

        Raises:
            FacilitatorError: If the facilitator is unreachable or the reply is unusable
        """
        response = self._post("verify", {
            "payment": claim.to_wire(),
            "paymentRequirements": requirement.to_wire(),
        })

        try:
            return VerifyResponse.model_validate(response.json())
        except ValueError as e:
            raise FacilitatorError(
                f"Facilitator verification failed: HTTP {response.status_code}"
            ) from e

    def settle(self, transaction_id: str, claim: PaymentClaim) -> Dict[str, Any]:
        """
        Notify the facilitator that a verified payment can be settled.

        Raises:
            FacilitatorError: On transport failure or a non-2xx reply
        """
        response = self._post("settle", {
            "transactionId": transaction_id,
            "payment": claim.to_wire(),
        })
        if not response.ok:
            raise FacilitatorError(f"Facilitator settlement failed: HTTP {response.status_code}")
        return response.json()


class SettlementNotifier:
    """
    Fire-and-forget settlement notifications.

    Notifications run on a small worker pool. A failure is logged and never
    reaches the verification result.
    """

    def __init__(
        self,
        client: Optional[FacilitatorClient] = None,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        self._client = client or FacilitatorClient()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="x402-settle"
        )

    def _settle(self, transaction_id: str, claim: PaymentClaim) -> None:
        try:
            self._client.settle(transaction_id, claim)
            logger.info(f"Settlement notification sent for {short_ref(transaction_id)}")
        except Exception as e:
            # Non-critical: the payment is already verified on-chain
            logger.warning(f"Settlement notification failed for {short_ref(transaction_id)}: {e}")

    def notify(self, transaction_id: str, claim: PaymentClaim) -> Optional[Future]:
        """
        Dispatch a settlement notification.

        Returns:
            The Future of the background job, or None if no facilitator is configured
        """
        if not self._client.base_url:
            logger.debug("No facilitator configured, skipping settlement notification")
            return None
        return self._executor.submit(self._settle, transaction_id, claim)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


_settlement_notifier: Optional[SettlementNotifier] = None
_settlement_notifier_lock = threading.Lock()


def get_settlement_notifier() -> SettlementNotifier:
    """Get the process-wide settlement notifier."""
    global _settlement_notifier

    if _settlement_notifier is None:
        with _settlement_notifier_lock:
            if _settlement_notifier is None:
                _settlement_notifier = SettlementNotifier()

    return _settlement_notifier
