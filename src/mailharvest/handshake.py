"""Summary: Ephemeral store for pending OAuth handshakes.

Importance: Correlates authorization redirects with callbacks and makes each state single-use.
Alternatives: Store state in signed cookies or an external cache with TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from mailharvest.errors import InvalidStateError
from mailharvest.oauth import create_state_token


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingHandshake:
    """A handshake started but not yet completed."""

    state: str
    email: str
    provider: str
    created_at: float


class HandshakeStateStore:
    """Summary: Thread-safe, expiring map from state token to pending handshake.

    Importance: Consumption is an atomic check-and-delete, so a state cannot be redeemed twice.
    Alternatives: Keep states in a module-level dict guarded by the GIL only.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: dict[str, PendingHandshake] = {}

    def register(self, email: str, provider: str) -> str:
        """Summary: Record a new handshake and return its state token.

        Importance: Ties the eventual callback to the email that started it.
        Alternatives: Encode the email inside the state value itself.
        """

        state = create_state_token()
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._pending[state] = PendingHandshake(
                state=state, email=email, provider=provider, created_at=now
            )
        return state

    def consume(self, state: str) -> PendingHandshake:
        """Summary: Remove and return the handshake for a state token.

        Importance: Read and invalidate happen under one lock acquisition.
        Alternatives: Mark records as used instead of deleting them.
        """

        with self._lock:
            record = self._pending.pop(state, None)
            now = self._clock()
        if record is None:
            raise InvalidStateError("Unknown or already used OAuth state")
        if now - record.created_at > self._ttl:
            logger.info("Rejected expired OAuth state for %s.", record.provider)
            raise InvalidStateError("OAuth state expired")
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _purge_expired(self, now: float) -> None:
        # Caller holds the lock.
        expired = [key for key, record in self._pending.items() if now - record.created_at > self._ttl]
        for key in expired:
            del self._pending[key]
