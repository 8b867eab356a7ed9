# tests/test_x402_middleware.py
"""
Integration tests for the x402 middleware.

The gate runs against an in-memory resource store and a fake ledger, so no
content service or blockchain is needed.
"""
import base64
import json
import pytest
from unittest.mock import MagicMock, patch

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.x402.audit import AuditEventType, read_audit_log
from app.x402.gate import Gate
from app.x402.ledger import LedgerOracle, LedgerTransaction
from app.x402.middleware import (
    PAYMENT_STATE_ATTR,
    X402Middleware,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    encode_payment_response,
    extract_resource_id,
    get_client_ip,
)
from app.x402.replay import ReplayCache
from app.x402.resources import InMemoryResourceLookup
from app.x402.verifier import Verifier

ASSET = "USDC-MINT"
NETWORK = "solana-devnet"
SIGNATURE = "4" * 88
MACHINE = {"Accept": "application/json", "User-Agent": "python-requests/2.31"}
BROWSER = {"Accept": "text/html", "User-Agent": "Mozilla/5.0"}


@pytest.fixture(autouse=True)
def middleware_settings(monkeypatch):
    from app.core.config import settings
    monkeypatch.setattr(settings, "X402_ENABLED", True)
    monkeypatch.setattr(settings, "X402_SCHEME", "exact")
    monkeypatch.setattr(settings, "X402_NETWORK", NETWORK)
    monkeypatch.setattr(settings, "X402_ASSET", ASSET)
    monkeypatch.setattr(settings, "X402_ASSET_DECIMALS", 6)
    monkeypatch.setattr(settings, "X402_PROTECTED_PATH_PREFIX", "/post/")
    monkeypatch.setattr(settings, "X402_SESSION_COOKIE_PREFIX", "post_payment_verified")
    monkeypatch.setattr(settings, "X402_SESSION_MAX_AGE_SECONDS", 86400)
    monkeypatch.setattr(settings, "X402_SESSION_COOKIE_SECURE", True)
    monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", True)


class Harness:
    """A test app wired to an in-memory gate."""

    def __init__(self, ledger_result=None):
        self.resources = InMemoryResourceLookup({
            "paid": {
                "title": "Paid post",
                "content": "the secret",
                "walletAddress": "PAY1",
                "paymentAmount": "1",
                "paymentCurrency": "USDC",
                "createdAt": "2024-01-01T00:00:00Z",
                "mediaFiles": [{"id": "f1"}],
            },
            "free": {"title": "Free post", "content": "hello"},
        })
        self.cache = ReplayCache(ttl_seconds=86400)
        self.ledger = MagicMock(spec=LedgerOracle)
        self.ledger.lookup.side_effect = lambda reference: ledger_result or LedgerTransaction(
            reference=reference, found=True, succeeded=True
        )
        self.verifier = Verifier(cache=self.cache, ledger=self.ledger, use_facilitator=False)
        self.gate = Gate(
            resources=self.resources, verifier=self.verifier, cache=self.cache, trust_token_format=False
        )

        app = FastAPI()

        @app.get("/post/{post_id}")
        async def read_post(post_id: str, request: Request):
            return {
                "id": post_id,
                "content": "full content",
                "access": getattr(request.state, PAYMENT_STATE_ATTR, None),
            }

        @app.get("/api/health")
        async def health():
            return {"status": "healthy"}

        app.add_middleware(X402Middleware, gate=self.gate)
        self.client = TestClient(app)


def make_header(reference=SIGNATURE, amount="1000000", encode=False):
    header = json.dumps({
        "x402Version": 1,
        "scheme": "exact",
        "network": NETWORK,
        "payload": {
            "reference": reference,
            "from": "PAYER1",
            "to": "PAY1",
            "amount": amount,
            "asset": ASSET,
        },
    })
    if encode:
        return base64.b64encode(header.encode()).decode()
    return header


class TestExtractResourceId:
    """Test protected path matching."""

    def test_post_path(self):
        assert extract_resource_id("/post/abc") == "abc"

    def test_nested_post_path(self):
        assert extract_resource_id("/post/abc/comments") == "abc"

    def test_missing_id(self):
        assert extract_resource_id("/post/") is None

    def test_other_paths(self):
        assert extract_resource_id("/") is None
        assert extract_resource_id("/posts/abc") is None
        assert extract_resource_id("/api/posts/abc/payment-status") is None


class TestGetClientIP:
    """Test client IP extraction."""

    def test_forwarded_for_header(self):
        request = MagicMock(spec=Request)
        request.headers = {"X-Forwarded-For": "203.0.113.50, 70.41.3.18"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.50"

    def test_real_ip_header(self):
        request = MagicMock(spec=Request)
        request.headers = {"X-Real-IP": "203.0.113.50"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.50"

    def test_no_client_info(self):
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = None

        assert get_client_ip(request) == "unknown"


class TestMiddlewarePassThrough:
    """Requests that never reach verification."""

    def test_unprotected_path(self):
        harness = Harness()
        response = harness.client.get("/api/health", headers=MACHINE)

        assert response.status_code == 200
        harness.ledger.lookup.assert_not_called()

    def test_free_post_forwarded(self):
        harness = Harness()
        response = harness.client.get("/post/free", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        assert response.status_code == 200
        assert response.json()["access"] == "unprotected"
        harness.ledger.lookup.assert_not_called()

    @patch("app.x402.middleware.settings")
    def test_disabled(self, mock_settings):
        mock_settings.X402_ENABLED = False
        harness = Harness()

        response = harness.client.get("/post/paid", headers=MACHINE)

        assert response.status_code == 200
        assert response.json()["access"] is None


class TestMiddlewareChallenge:
    """Protected post without payment."""

    def test_machine_request_gets_402(self):
        harness = Harness()
        response = harness.client.get("/post/paid", headers=MACHINE)

        assert response.status_code == 402
        body = response.json()
        assert body["x402Version"] == 1
        assert body["error"] == "Payment required"
        assert body["resourceId"] == "paid"
        assert body["paymentAmount"] == "1"
        assert body["paymentCurrency"] == "USDC"
        assert body["payTo"] == "PAY1"
        assert body["resource"]["content"] == ""
        assert body["resource"]["title"] == "Paid post"
        assert "mediaFiles" not in body["resource"]
        assert body["accepts"] == [{
            "scheme": "exact",
            "network": NETWORK,
            "maxAmountRequired": "1000000",
            "asset": ASSET,
            "payTo": "PAY1",
        }]
        assert "reason" not in body

    def test_browser_request_forwarded(self):
        harness = Harness()
        response = harness.client.get("/post/paid", headers=BROWSER)

        assert response.status_code == 200
        assert response.json()["access"] == "challenged"

    def test_challenge_audited(self):
        harness = Harness()
        harness.client.get("/post/paid", headers=MACHINE)

        events = read_audit_log(event_type=AuditEventType.PAYMENT_REQUIRED_SENT)
        assert len(events) == 1
        assert events[0]["data"]["resource_id"] == "paid"
        assert events[0]["data"]["amount"] == "1000000"


class TestMiddlewareVerification:
    """Requests carrying X-PAYMENT."""

    def test_valid_payment_granted(self):
        harness = Harness()
        response = harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        assert response.status_code == 200
        assert response.json()["content"] == "full content"
        assert response.json()["access"] == "granted"

        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"post_payment_verified_paid={SIGNATURE}")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "SameSite=lax" in cookie
        assert "Max-Age=86400" in cookie
        assert "Path=/" in cookie

        payment_response = json.loads(base64.b64decode(response.headers[X_PAYMENT_RESPONSE_HEADER]))
        assert payment_response == {"success": True, "transaction": SIGNATURE, "network": NETWORK}

    def test_base64_header_accepted(self):
        harness = Harness()
        response = harness.client.get(
            "/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header(encode=True)}
        )

        assert response.status_code == 200

    def test_session_cookie_reused(self):
        harness = Harness()
        harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        response = harness.client.get(
            "/post/paid",
            headers={**MACHINE, "Cookie": f"post_payment_verified_paid={SIGNATURE}"},
        )

        assert response.status_code == 200
        assert response.json()["access"] == "session"
        assert harness.ledger.lookup.call_count == 1

    def test_cookie_not_valid_for_other_post(self):
        harness = Harness()
        harness.resources.put("paid-2", {"walletAddress": "PAY1", "paymentAmount": "1"})
        harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        response = harness.client.get(
            "/post/paid-2",
            headers={**MACHINE, "Cookie": f"post_payment_verified_paid-2={SIGNATURE}"},
        )

        assert response.status_code == 402

    def test_payment_not_reusable_for_other_post(self):
        """A post with the same recipient and price still needs its own payment."""
        harness = Harness()
        harness.resources.put("paid-2", {"walletAddress": "PAY1", "paymentAmount": "1"})
        harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        response = harness.client.get("/post/paid-2", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        assert response.status_code == 402
        assert response.json()["reason"] == "ReferenceAlreadyUsed"
        assert "set-cookie" not in response.headers
        assert harness.ledger.lookup.call_count == 1

        # The original post's session is untouched
        response = harness.client.get(
            "/post/paid",
            headers={**MACHINE, "Cookie": f"post_payment_verified_paid={SIGNATURE}"},
        )
        assert response.json()["access"] == "session"

    def test_amount_mismatch_denied(self):
        harness = Harness()
        response = harness.client.get(
            "/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header(amount="500000")}
        )

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Payment verification failed"
        assert body["reason"] == "AmountMismatch"
        assert body["resource"]["content"] == ""
        assert "set-cookie" not in response.headers
        harness.ledger.lookup.assert_not_called()

    def test_failed_transaction_denied(self):
        harness = Harness(ledger_result=LedgerTransaction(reference=SIGNATURE, found=True, succeeded=False))
        response = harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        assert response.status_code == 402
        assert response.json()["reason"] == "TransactionFailed"

        events = read_audit_log(event_type=AuditEventType.PAYMENT_FAILED)
        assert events[0]["data"]["reason"] == "TransactionFailed"

    def test_malformed_header_denied(self):
        harness = Harness()
        response = harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: "garbage!!"})

        assert response.status_code == 402
        assert response.json()["reason"] == "InvalidStructure"

    def test_internal_error_audited(self):
        harness = Harness()
        harness.ledger.lookup.side_effect = RuntimeError("rpc client crashed")

        response = harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        assert response.status_code == 402
        assert response.json()["reason"] == "InternalError"
        errors = read_audit_log(event_type=AuditEventType.ERROR)
        assert len(errors) == 1
        assert errors[0]["data"]["context"] == {"resource_id": "paid"}

    def test_events_share_request_id(self):
        harness = Harness()
        harness.client.get("/post/paid", headers={**MACHINE, X_PAYMENT_HEADER: make_header()})

        received = read_audit_log(event_type=AuditEventType.REQUEST_RECEIVED)
        verified = read_audit_log(event_type=AuditEventType.PAYMENT_VERIFIED)
        assert received[0]["data"]["resource_id"] == "paid"
        assert verified[0]["request_id"] == received[0]["request_id"]

    def test_browser_denial_is_structured(self):
        """A failed payment is reported even to document clients."""
        harness = Harness()
        response = harness.client.get(
            "/post/paid", headers={**BROWSER, X_PAYMENT_HEADER: make_header(amount="1")}
        )

        assert response.status_code == 402
        assert response.json()["reason"] == "AmountMismatch"


def test_encode_payment_response():
    decoded = json.loads(base64.b64decode(encode_payment_response("SIG1", NETWORK)))
    assert decoded == {"success": True, "transaction": "SIG1", "network": NETWORK}
