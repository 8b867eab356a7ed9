# app/x402/ledger.py
"""
Ledger oracle for x402 payment confirmation.

Looks up a payment reference (a Solana transaction signature) via JSON-RPC
`getTransaction` and reports whether the transaction exists and succeeded.
The oracle is read-only and keeps no state.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import requests

from app.core.config import settings
from app.x402.models import short_ref

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """The ledger RPC endpoint returned an error or a malformed response."""


@dataclass(frozen=True)
class LedgerTransaction:
    """What the ledger knows about one reference."""
    reference: str
    found: bool
    succeeded: bool = False
    slot: Optional[int] = None
    error: Any = None


class LedgerOracle:
    """Interface for ledger lookups."""

    def lookup(self, reference: str) -> LedgerTransaction:
        """
        Look up a transaction by reference.

        Raises:
            requests.RequestException: On transport failures (including timeouts)
            LedgerError: If the ledger reports an error for the query itself
        """
        raise NotImplementedError


class SolanaRpcLedger(LedgerOracle):
    """LedgerOracle backed by a Solana JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout: Optional[float] = None,
        commitment: Optional[str] = None
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._commitment = commitment

    @property
    def rpc_url(self) -> str:
        return self._rpc_url or str(settings.X402_RPC_URL)

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return settings.X402_RPC_TIMEOUT_SECONDS

    @property
    def commitment(self) -> str:
        return self._commitment or settings.X402_RPC_COMMITMENT

    def lookup(self, reference: str) -> LedgerTransaction:
        response = requests.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": "getTransaction",
                "params": [
                    reference,
                    {
                        "encoding": "json",
                        "commitment": self.commitment,
                        "maxSupportedTransactionVersion": 0,
                    },
                ],
            },
            timeout=self.timeout
        )
        response.raise_for_status()

        result = response.json()
        if "error" in result:
            raise LedgerError(f"RPC error: {result['error']}")

        if "result" not in result:
            raise LedgerError("Invalid RPC response: missing 'result' field")

        transaction = result["result"]
        if transaction is None:
            logger.info(f"Ledger: transaction {short_ref(reference)} not found")
            return LedgerTransaction(reference=reference, found=False)

        meta = transaction.get("meta") or {}
        error = meta.get("err")
        if error is not None:
            logger.warning(f"Ledger: transaction {short_ref(reference)} failed on-chain: {error}")

        return LedgerTransaction(
            reference=reference,
            found=True,
            succeeded=error is None,
            slot=transaction.get("slot"),
            error=error,
        )


_ledger_oracle: Optional[LedgerOracle] = None
_ledger_oracle_lock = threading.Lock()


def get_ledger_oracle() -> LedgerOracle:
    """Get the process-wide ledger oracle."""
    global _ledger_oracle

    if _ledger_oracle is None:
        with _ledger_oracle_lock:
            if _ledger_oracle is None:
                _ledger_oracle = SolanaRpcLedger()

    return _ledger_oracle
