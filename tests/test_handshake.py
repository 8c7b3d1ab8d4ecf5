"""Summary: Tests for the OAuth handshake state store.

Importance: States must be single-use and expire.
Alternatives: Rely on provider-side CSRF protection only.
"""

from __future__ import annotations

import threading

import pytest

from mailharvest.errors import InvalidStateError
from mailharvest.handshake import HandshakeStateStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_consume_returns_registered_handshake() -> None:
    store = HandshakeStateStore(ttl_seconds=600)
    state = store.register("user@gmail.com", "gmail")
    record = store.consume(state)
    assert record.email == "user@gmail.com"
    assert record.provider == "gmail"
    assert len(store) == 0


def test_state_is_single_use() -> None:
    store = HandshakeStateStore(ttl_seconds=600)
    state = store.register("user@gmail.com", "gmail")
    store.consume(state)
    with pytest.raises(InvalidStateError):
        store.consume(state)


def test_unknown_state_rejected() -> None:
    with pytest.raises(InvalidStateError):
        HandshakeStateStore(ttl_seconds=600).consume("nope")


def test_expired_state_rejected_and_purged() -> None:
    """Summary: States older than the TTL fail and are purged on the next register.

    Importance: Bounds the replay window for leaked state values.
    Alternatives: Keep states until the process restarts.
    """

    clock = FakeClock()
    store = HandshakeStateStore(ttl_seconds=60, clock=clock)
    stale = store.register("a@gmail.com", "gmail")
    clock.now += 61
    with pytest.raises(InvalidStateError, match="expired"):
        store.consume(stale)

    store.register("b@gmail.com", "gmail")
    clock.now += 61
    store.register("c@gmail.com", "gmail")
    assert len(store) == 1


def test_concurrent_consume_succeeds_once() -> None:
    store = HandshakeStateStore(ttl_seconds=600)
    state = store.register("user@gmail.com", "gmail")
    results: list[str] = []
    barrier = threading.Barrier(8)

    def attempt() -> None:
        barrier.wait()
        try:
            store.consume(state)
            results.append("ok")
        except InvalidStateError:
            results.append("rejected")

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results.count("ok") == 1
    assert results.count("rejected") == 7
