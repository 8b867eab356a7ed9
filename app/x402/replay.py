# app/x402/replay.py
"""
Replay protection for verified x402 payments.

Remembers which payment references have already been verified (and for which
resource) so that:
- re-submitting an already verified reference does not query the ledger again
- a reference verified for one resource cannot unlock a different resource

Records expire after X402_REPLAY_TTL_SECONDS (default 24h). Expired records are
dropped lazily on lookup and by a periodic background sweep.

Storage is in-memory only: records are lost on restart and are not shared
between instances.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional

from app.core.config import settings
from app.x402.models import ReplayRecord, short_ref

logger = logging.getLogger(__name__)


class ReplayCache:
    """
    TTL-bounded membership store keyed by payment reference.

    Thread-safe: the lock only guards individual dict operations and is never
    held across I/O.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the replay cache.

        Args:
            ttl_seconds: Record lifetime in seconds. If None, uses config.
            clock: Time source returning epoch seconds (injectable for tests).
        """
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, ReplayRecord] = {}
        self._lock = threading.Lock()
        self._sweep_stop: Optional[threading.Event] = None
        self._sweep_thread: Optional[threading.Thread] = None

    @property
    def ttl_seconds(self) -> int:
        """Get the record lifetime (lazy load from settings if not set)."""
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return settings.X402_REPLAY_TTL_SECONDS

    def _is_expired(self, record: ReplayRecord, now: float) -> bool:
        return now - record.verified_at > self.ttl_seconds

    def get(self, reference: str) -> Optional[ReplayRecord]:
        """Return the live record for a reference, dropping it if expired."""
        if not reference:
            return None

        now = self._clock()
        with self._lock:
            record = self._records.get(reference)
            if record is None:
                return None
            if self._is_expired(record, now):
                del self._records[reference]
                logger.debug(f"Expired replay record dropped: {short_ref(reference)}")
                return None
            return record

    def has(self, reference: str, resource_id: Optional[str] = None) -> bool:
        """
        Check whether a reference has already been verified.

        Args:
            reference: Payment reference (transaction signature)
            resource_id: If given, the record must be scoped to this resource

        Returns:
            True if a non-expired record exists and matches the resource scope
        """
        record = self.get(reference)
        if record is None:
            return False

        if resource_id is not None and record.resource_id != resource_id:
            return False

        return True

    def add(
        self,
        reference: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> ReplayRecord:
        """
        Record a successful verification (inserts or overwrites).

        Returns:
            The stored record
        """
        record = ReplayRecord(
            reference=reference,
            verified_at=self._clock(),
            resource_id=resource_id,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._records[reference] = record
        return record

    def claim(
        self,
        reference: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Record a verification unless a live record binds the reference to another resource.

        Check and insert happen under one lock, so two concurrent verifications
        of the same reference for different resources cannot both succeed.

        Returns:
            True if the reference is now recorded for resource_id
        """
        now = self._clock()
        record = ReplayRecord(
            reference=reference,
            verified_at=now,
            resource_id=resource_id,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            existing = self._records.get(reference)
            if (
                existing is not None
                and not self._is_expired(existing, now)
                and existing.resource_id != resource_id
            ):
                return False
            self._records[reference] = record
        return True

    def sweep(self) -> int:
        """
        Remove all expired records.

        Returns:
            Number of records removed
        """
        now = self._clock()
        with self._lock:
            expired = [
                reference for reference, record in self._records.items()
                if self._is_expired(record, now)
            ]
            for reference in expired:
                del self._records[reference]

        if expired:
            logger.debug(f"Swept {len(expired)} expired replay records")
        return len(expired)

    def size(self) -> int:
        """Number of stored records (including not-yet-swept expired ones)."""
        with self._lock:
            return len(self._records)

    def __len__(self) -> int:
        return self.size()

    def clear(self) -> None:
        """Drop all records."""
        with self._lock:
            self._records.clear()

    def start_background_sweep(self, interval_seconds: Optional[int] = None) -> None:
        """
        Start a daemon thread that calls sweep() periodically.

        Calling it again while a sweep thread is running is a no-op.
        """
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return

        interval = interval_seconds or settings.X402_REPLAY_SWEEP_INTERVAL_SECONDS
        stop = threading.Event()

        def _run() -> None:
            while not stop.wait(interval):
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"Replay cache sweep failed: {e}")

        self._sweep_stop = stop
        self._sweep_thread = threading.Thread(
            target=_run, name="x402-replay-sweep", daemon=True
        )
        self._sweep_thread.start()
        logger.info(f"Replay cache sweep started (every {interval}s)")

    def stop_background_sweep(self) -> None:
        """Stop the background sweep thread if it is running."""
        if self._sweep_stop is not None:
            self._sweep_stop.set()
        if self._sweep_thread is not None:
            self._sweep_thread.join(timeout=5)
        self._sweep_stop = None
        self._sweep_thread = None


# Process-wide replay cache used by the application wiring
_replay_cache: Optional[ReplayCache] = None
_replay_cache_lock = threading.Lock()


def get_replay_cache() -> ReplayCache:
    """
    Get the process-wide replay cache instance.

    Returns:
        The singleton ReplayCache
    """
    global _replay_cache

    if _replay_cache is None:
        with _replay_cache_lock:
            if _replay_cache is None:
                _replay_cache = ReplayCache()

    return _replay_cache


def reset_replay_cache() -> None:
    """Reset the process-wide replay cache (useful for testing)."""
    global _replay_cache
    with _replay_cache_lock:
        if _replay_cache is not None:
            _replay_cache.stop_background_sweep()
            _replay_cache.clear()
        _replay_cache = None
