# app/x402/audit.py
"""
Audit logging for x402 payment decisions.

This module logs gate decisions and payment events for:
- Dispute resolution ("I paid but could not open the post")
- Reconciliation of verified references against settlements
- Debugging verification failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- Request received (method, path, resource)
- Payment required sent (resource, amount, currency, pay_to)
- Payment verified (reference, payer, resource)
- Payment failed (reason, stage)
- Session accepted (resource, cookie-based access)
- Payment settled (reference, network)
- Error (type, context)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUEST_RECEIVED = "request_received"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    SESSION_ACCEPTED = "session_accepted"
    PAYMENT_SETTLED = "payment_settled"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer wallet address (if available)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    Returns:
        The request_id used for this event, or None if disabled or on error
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except Exception as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_request_received(
    client_ip: str,
    method: str,
    path: str,
    resource_id: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a request for a protected resource."""
    return log_audit_event(
        event_type=AuditEventType.REQUEST_RECEIVED,
        data={
            "method": method,
            "path": path,
            "resource_id": resource_id,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_required_sent(
    client_ip: str,
    resource_id: str,
    amount: str,
    currency: Optional[str],
    network: str,
    pay_to: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "resource_id": resource_id,
            "amount": amount,
            "currency": currency,
            "network": network,
            "pay_to": pay_to,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    resource_id: str,
    reference: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a successful payment verification."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "resource_id": resource_id,
            "reference": reference,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: str,
    resource_id: str,
    reason: str,
    stage: str,
    detail: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment failure event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "resource_id": resource_id,
            "reason": reason,
            "stage": stage,
            "detail": detail,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_session_accepted(
    client_ip: str,
    resource_id: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log access granted by an existing session cookie."""
    return log_audit_event(
        event_type=AuditEventType.SESSION_ACCEPTED,
        data={
            "resource_id": resource_id,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_settled(
    transaction_id: str,
    network: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a settlement notification received by the facilitator."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "transaction_id": transaction_id,
            "network": network,
        },
        wallet_address=payer,
        request_id=request_id
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    client_ip: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        client_ip: Filter by client IP (optional)

    Returns:
        List of audit events (most recent first)
    """
    try:
        log_path = get_audit_log_path()
        if not log_path.exists():
            return []

        events = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if client_ip and event.get("client_ip") != client_ip:
                    continue
                events.append(event)

        return list(reversed(events))[:max_entries]

    except Exception as e:
        logger.error(f"Failed to read audit log: {e}")
        return []
