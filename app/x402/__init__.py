# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module gates posts behind on-chain micropayments using the x402
"402 Payment Required" protocol.

Key components:
- models: PaymentRequirement, PaymentClaim and verification outcomes
- gate: per-request decision engine (unprotected / session / challenge / grant)
- verifier: claim verification against requirements and the ledger
- replay: TTL-bounded replay protection cache
- ledger: Solana JSON-RPC transaction lookups
- facilitator: facilitator client and background settlement notifications
- resources: protected resource lookup and requirement derivation
- middleware: FastAPI middleware wiring the gate into the request path
- audit: JSON-lines audit trail of payment decisions

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
