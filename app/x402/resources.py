# app/x402/resources.py
"""
Protected resource lookup and payment requirement derivation.

Resources (posts) live in an external content service; this module only reads
them. A resource is protected when it carries both a payment amount and a
wallet address. Its requirement is derived at request time by converting the
human-entered decimal amount to the asset's smallest unit.
"""
import logging
import threading
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests
from pydantic import BaseModel, Field

from app.core.config import settings
from app.x402.models import PaymentRequirement

logger = logging.getLogger(__name__)

# Fields a client may see before paying
PREVIEW_FIELDS = (
    "id",
    "title",
    "content",
    "walletAddress",
    "paymentAmount",
    "paymentCurrency",
    "createdAt",
)


class ResourceLookupError(Exception):
    """The resource service answered with something that is not a resource."""


class ProtectedResource(BaseModel):
    """Read-only view of a content record, as served by the content service."""
    id: str
    title: str = ""
    content: str = ""
    walletAddress: Optional[str] = None
    paymentAmount: Optional[str] = None
    paymentCurrency: Optional[str] = None
    createdAt: Optional[str] = None

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True  # paymentAmount may be stored as a number

    @property
    def is_protected(self) -> bool:
        return bool(self.paymentAmount) and bool(self.walletAddress)

    def full(self) -> Dict[str, Any]:
        return self.model_dump()

    def preview(self) -> Dict[str, Any]:
        """The record with paid fields stripped and content emptied."""
        data = self.model_dump()
        preview = {name: data.get(name) for name in PREVIEW_FIELDS}
        preview["content"] = ""
        return preview


def to_smallest_unit(amount: str, decimals: int) -> str:
    """
    Convert a decimal amount to the asset's smallest unit, rounding half up.

    Args:
        amount: Human-entered amount, e.g. "0.05"
        decimals: Asset scale, e.g. 6 for USDC

    Returns:
        Integer amount as a string, e.g. "50000"

    Raises:
        ValueError: If the amount is not a finite decimal number
    """
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid payment amount: {amount!r}") from e

    if not value.is_finite():
        raise ValueError(f"Invalid payment amount: {amount!r}")

    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return str(int(scaled))


def derive_requirement(
    resource: ProtectedResource,
    network: Optional[str] = None,
    asset: Optional[str] = None,
    decimals: Optional[int] = None
) -> Optional[PaymentRequirement]:
    """
    Build the payment requirement for a resource.

    Returns:
        The requirement, or None if the resource is not protected

    Raises:
        ValueError: If the resource carries a malformed or non-positive amount
    """
    if not resource.is_protected:
        return None

    amount = to_smallest_unit(
        resource.paymentAmount,
        decimals if decimals is not None else settings.X402_ASSET_DECIMALS,
    )
    if int(amount) <= 0:
        raise ValueError(f"Non-positive payment amount: {resource.paymentAmount!r}")

    return PaymentRequirement(
        scheme=settings.X402_SCHEME,
        network=network or settings.X402_NETWORK,
        amount=amount,
        asset=asset or settings.X402_ASSET,
        pay_to=resource.walletAddress,
    )


class ResourceLookup:
    """Interface for fetching protected resources by id."""

    def lookup(self, resource_id: str) -> Optional[ProtectedResource]:
        """
        Fetch a resource.

        Returns:
            The resource, or None if it does not exist

        Raises:
            requests.RequestException: On transport failures
            ResourceLookupError: If the record cannot be parsed
        """
        raise NotImplementedError


class HttpResourceLookup(ResourceLookup):
    """Fetches resources from the content service: GET {base}/posts?uuid=<id>."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self._base_url = base_url
        self._timeout = timeout

    @property
    def base_url(self) -> Optional[str]:
        url = self._base_url or settings.RESOURCE_API_URL
        return str(url) if url else None

    def lookup(self, resource_id: str) -> Optional[ProtectedResource]:
        if not self.base_url:
            logger.warning("RESOURCE_API_URL not configured - treating resources as unprotected")
            return None

        api_url = urljoin(self.base_url.rstrip("/") + "/", "posts")
        timeout = self._timeout if self._timeout is not None else settings.RESOURCE_LOOKUP_TIMEOUT_SECONDS

        response = requests.get(api_url, params={"uuid": resource_id}, timeout=timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()

        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            return ProtectedResource.model_validate({"id": resource_id, **data})
        except ValueError as e:
            raise ResourceLookupError(f"Malformed resource {resource_id}: {e}") from e


class InMemoryResourceLookup(ResourceLookup):
    """Dict-backed lookup for local development and tests."""

    def __init__(self, resources: Optional[Dict[str, Dict[str, Any]]] = None):
        self._resources: Dict[str, ProtectedResource] = {}
        for resource_id, data in (resources or {}).items():
            self.put(resource_id, data)

    def put(self, resource_id: str, data: Dict[str, Any]) -> ProtectedResource:
        resource = ProtectedResource.model_validate({"id": resource_id, **data})
        self._resources[resource_id] = resource
        return resource

    def lookup(self, resource_id: str) -> Optional[ProtectedResource]:
        return self._resources.get(resource_id)


_resource_lookup: Optional[ResourceLookup] = None
_resource_lookup_lock = threading.Lock()


def get_resource_lookup() -> ResourceLookup:
    """Get the process-wide resource lookup."""
    global _resource_lookup

    if _resource_lookup is None:
        with _resource_lookup_lock:
            if _resource_lookup is None:
                _resource_lookup = HttpResourceLookup()

    return _resource_lookup
